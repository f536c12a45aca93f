"""
Refund Watchdog - committed boxes that never revealed.

A box is marked refund-eligible when:
- it is committed (committed_at > 0)
- it is NOT revealed
- its reveal window (per project, default 1h) has passed
- it is NOT already refund-eligible or refunded

Each candidate is re-read (store + ledger) under its box lock before the
write, so a reveal that lands between the query and the mark wins.
"""

import time
import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from .box import BoxPhase
from .config import POLICY, ProjectConfig, SettlementPolicy
from .state import BoxStateReader

logger = logging.getLogger("fatebox.watchdog")

REVEAL_WINDOW_EXPIRED = "reveal_window_expired"


@dataclass
class WatchdogReport:
    checked: int = 0
    marked: list = field(default_factory=list)
    skipped: dict = field(default_factory=dict)
    errors: dict = field(default_factory=dict)
    dry_run: bool = False

    def to_dict(self) -> dict:
        return {
            "checked": self.checked,
            "marked": list(self.marked),
            "skipped": dict(self.skipped),
            "errors": dict(self.errors),
            "dry_run": self.dry_run,
        }


class RefundWatchdog:

    def __init__(self, state: BoxStateReader, projects: dict[str, ProjectConfig],
                 policy: SettlementPolicy = POLICY, clock: Callable[[], float] = time.time):
        self.state = state
        self.projects = projects
        self.policy = policy
        self._clock = clock

    def _window(self, project_id: str) -> int:
        cfg = self.projects.get(project_id)
        return cfg.reveal_window_seconds if cfg else self.policy.DEFAULT_REVEAL_WINDOW_SECONDS

    async def run_once(self, now: Optional[float] = None, project_id: Optional[str] = None,
                       dry_run: bool = False) -> WatchdogReport:
        now = self._clock() if now is None else now
        report = WatchdogReport(dry_run=dry_run)

        # unconfigured projects fall back to the default window, so it always counts
        if project_id is not None:
            windows = [self._window(project_id)]
        else:
            windows = [self._window(p) for p in self.projects]
            windows.append(self.policy.DEFAULT_REVEAL_WINDOW_SECONDS)
        cutoff = now - min(windows)
        candidates = self.state.store.committed_unrevealed_before(cutoff, project_id=project_id)
        report.checked = len(candidates)

        for candidate in candidates:
            box_id = candidate.box_id
            try:
                async with self.state.lock(box_id):
                    box = await self.state.refresh(box_id, require_on_ledger=False)
                    window = self._window(box.project_id)

                    if box.phase != BoxPhase.COMMITTED:
                        report.skipped[box_id] = f"phase is {box.phase.value}"
                        continue
                    if not box.reveal_window_elapsed(window, now=now):
                        report.skipped[box_id] = "within reveal window"
                        continue

                    if dry_run:
                        logger.info(f"[DRY RUN] would mark box {box_id} refund-eligible "
                                    f"(committed {(now - box.committed_at) / 3600:.1f}h ago)")
                        report.marked.append(box_id)
                        continue

                    box.refund_eligible = True
                    box.reveal_failure_reason = REVEAL_WINDOW_EXPIRED
                    box.updated_at = now
                    self.state.store.put(box)
                    report.marked.append(box_id)
                    logger.info(f"Box {box_id} marked refund-eligible (owner {box.owner[:10]}...)")
            except Exception as e:
                logger.error(f"Watchdog failed on box {box_id}: {e}", exc_info=True)
                report.errors[box_id] = str(e)

        if report.marked or report.errors:
            logger.info(
                f"Watchdog: {len(report.marked)} marked, {len(report.skipped)} skipped, "
                f"{len(report.errors)} errors{' (dry run)' if dry_run else ''}"
            )
        return report
