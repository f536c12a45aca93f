"""
Settlement Server - Entry Point

Runs the box settlement backend:
  - HTTP API for box lifecycle and vault economics
  - Background refund watchdog (stuck commits -> refund-eligible)

Usage:
  python -m fatebox_platform.platform_main
  # or via uvicorn:
  uvicorn fatebox_platform.platform_main:app

Environment variables (see also fatebox_platform/bootstrap.py):
  WATCHDOG_INTERVAL   Seconds between watchdog passes (default: 300)
  CORS_ORIGINS        Comma-separated CORS origins
  HOST                Server bind host (default: 0.0.0.0)
  PORT                Server bind port (default: 8002)
  LOG_LEVEL           Logging level (default: INFO)
"""

import os
import asyncio
import logging
from contextlib import asynccontextmanager

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI

# ── Bootstrap ──────────────────────────────────────────────────

load_dotenv()

from fatebox.logs import setup_logging  # noqa: E402

setup_logging()
logger = logging.getLogger("fatebox.platform.main")

from fatebox.engine import SettlementEngine  # noqa: E402
from fatebox_platform.api import create_app as create_api  # noqa: E402
from fatebox_platform.bootstrap import build_engine_from_env  # noqa: E402

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "8002"))


# ── Background watchdog ────────────────────────────────────────

async def _watchdog_loop(engine: SettlementEngine, interval: int):
    """Mark expired commits refund-eligible every `interval` seconds."""
    logger.info(f"Refund watchdog started (interval: {interval}s)")
    while True:
        try:
            report = await engine.watchdog.run_once()
            if report.errors:
                logger.warning(f"Watchdog pass had {len(report.errors)} errors")
        except Exception as e:
            logger.warning(f"Watchdog cycle error: {e}")
        await asyncio.sleep(interval)


# ── App factory ────────────────────────────────────────────────

def create_app() -> FastAPI:
    """Build the settlement FastAPI app with all modules initialized."""

    engine, ledger, oracle = build_engine_from_env()
    interval = engine.watchdog.policy.WATCHDOG_INTERVAL_SECONDS

    logger.info(
        f"Settlement engine initialized — projects: {len(engine.projects)}, "
        f"ledger: {'connected' if ledger.get_status()['initialized'] else 'disabled'}"
    )

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        logger.info(f"Settlement server starting on {HOST}:{PORT}")
        task = asyncio.create_task(_watchdog_loop(engine, interval), name="refund_watchdog")
        try:
            yield
        finally:
            logger.info("Settlement server shutting down...")
            task.cancel()
            await oracle.close()

    return create_api(engine, lifespan=lifespan)


# Module-level app for uvicorn
app = create_app()


# ── Entry point ────────────────────────────────────────────────

if __name__ == "__main__":
    uvicorn.run(
        "fatebox_platform.platform_main:app",
        host=HOST,
        port=PORT,
        log_level=os.getenv("LOG_LEVEL", "info").lower(),
        reload=os.getenv("DEV", "false").lower() in ("true", "1"),
    )
