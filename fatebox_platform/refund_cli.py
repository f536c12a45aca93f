"""
Mark committed boxes that failed to reveal as refund-eligible.

Finds boxes that:
- are committed
- are NOT revealed
- have passed their project's reveal window
- are NOT already refund-eligible

Usage:
    python scripts/mark_refund_eligible.py [--project <id>] [--dry-run]
"""

import argparse
import asyncio
import logging
from typing import Optional

from dotenv import load_dotenv

from fatebox.engine import SettlementEngine
from fatebox.logs import setup_logging

logger = logging.getLogger("fatebox.refund_cli")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Mark committed boxes past their reveal window as refund-eligible",
    )
    parser.add_argument(
        "--project", "-p", default=None,
        help="Only process boxes for this project id",
    )
    parser.add_argument(
        "--dry-run", action="store_true",
        help="Show what would be done without making changes",
    )
    return parser


async def run(engine: SettlementEngine, project_id: Optional[str], dry_run: bool) -> int:
    logger.info("=" * 60)
    logger.info("MARK FAILED BOXES AS REFUND-ELIGIBLE")
    logger.info("=" * 60)
    if dry_run:
        logger.info("[DRY RUN MODE - no changes will be made]")
    if project_id:
        logger.info(f"Filtering by project: {project_id}")

    report = await engine.watchdog.run_once(project_id=project_id, dry_run=dry_run)

    logger.info(f"Candidates checked: {report.checked}")
    for box_id in report.marked:
        logger.info(f"  {'would mark' if dry_run else 'marked'}: {box_id}")
    for box_id, reason in report.skipped.items():
        logger.info(f"  skipped {box_id}: {reason}")
    for box_id, error in report.errors.items():
        logger.error(f"  error {box_id}: {error}")
    logger.info("=" * 60)

    return 1 if report.errors else 0


def main(argv: Optional[list[str]] = None) -> int:
    load_dotenv()
    setup_logging()
    args = build_parser().parse_args(argv)

    from fatebox_platform.bootstrap import build_engine_from_env
    engine, _, oracle = build_engine_from_env()

    async def _run():
        try:
            return await run(engine, args.project, args.dry_run)
        finally:
            await oracle.close()

    return asyncio.run(_run())
