"""
Wiring for the settlement engine.

One BoxStateReader is shared by every component so that all transitions on
a box go through the same per-box lock.
"""

import time
from dataclasses import dataclass
from typing import Callable

from .config import POLICY, ProjectConfig, SettlementPolicy
from .ledger import LedgerClient
from .oracle import RandomnessOracle
from .orchestrator import CommitRevealOrchestrator
from .settlement import SettlementExecutor
from .state import BoxStateReader
from .store import BoxStore
from .sweep import ReconciliationSweep
from .vault import VaultGuard
from .watchdog import RefundWatchdog


@dataclass
class SettlementEngine:
    projects: dict[str, ProjectConfig]
    state: BoxStateReader
    orchestrator: CommitRevealOrchestrator
    settlement: SettlementExecutor
    vault: VaultGuard
    sweep: ReconciliationSweep
    watchdog: RefundWatchdog

    def get_status(self) -> dict:
        return {
            "projects": sorted(self.projects),
            "mint_cache_entries": len(self.sweep.mint_cache),
        }


def build_engine(
    ledger: LedgerClient,
    oracle: RandomnessOracle,
    store: BoxStore,
    projects: dict[str, ProjectConfig],
    policy: SettlementPolicy = POLICY,
    clock: Callable[[], float] = time.time,
    oracle_retry_delay: float = None,
) -> SettlementEngine:
    state = BoxStateReader(ledger, store)
    retry = policy.ORACLE_RETRY_DELAY_SECONDS if oracle_retry_delay is None else oracle_retry_delay
    return SettlementEngine(
        projects=projects,
        state=state,
        orchestrator=CommitRevealOrchestrator(state, oracle, projects, clock=clock,
                                              oracle_retry_delay=retry),
        settlement=SettlementExecutor(state, projects, clock=clock),
        vault=VaultGuard(ledger, store, projects, policy=policy),
        sweep=ReconciliationSweep(ledger, store, projects, policy=policy, clock=clock),
        watchdog=RefundWatchdog(state, projects, policy=policy, clock=clock),
    )
