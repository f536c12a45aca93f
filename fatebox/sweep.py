"""
Reconciliation Sweep - rate-limited batch status.

Reports the live phase and luck of up to MAX_BOXES_PER_REQUEST boxes in one
call without flooding the ledger:

  ids -> chunks of CHUNK_SIZE -> gather(chunk) under a semaphore
      -> sleep CHUNK_DELAY between chunks

One ledger read per box. A failing box is recorded in `errors` and the rest
of the batch carries on.

Unopened boxes show an estimated current luck. Their mint time comes from
the ledger record when it has one, otherwise from MintTimeCache (first
ledger activity, time-boxed). When even that fails the mint time is guessed
as "now minus a few random minutes" and the result is flagged
luck_estimated. Those guesses are display-only and never reach settlement.
"""

import time
import random
import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from .box import Box, BoxPhase, derive_phase
from .config import POLICY, ProjectConfig, SettlementPolicy
from .errors import PreconditionViolation
from .ledger import LedgerClient
from .luck import luck
from .store import BoxStore

logger = logging.getLogger("fatebox.sweep")


# ============================================================
# MINT-TIME CACHE
# ============================================================

@dataclass
class _MintEntry:
    mint_time: float
    cached_at: float
    estimated: bool


class MintTimeCache:
    """box_id -> mint time, with TTL. Expired entries are dropped on read."""

    def __init__(self, ledger: LedgerClient, policy: SettlementPolicy = POLICY,
                 clock: Callable[[], float] = time.time):
        self.ledger = ledger
        self.ttl = policy.MINT_TIME_CACHE_TTL_SECONDS
        self.lookup_timeout = policy.MINT_LOOKUP_TIMEOUT_SECONDS
        self.fallback_jitter = policy.MINT_FALLBACK_JITTER_SECONDS
        self._clock = clock
        self._entries: dict[str, _MintEntry] = {}

    def __len__(self):
        return len(self._entries)

    def _fresh(self, box_id: str) -> Optional[_MintEntry]:
        entry = self._entries.get(box_id)
        if entry is None:
            return None
        if self._clock() - entry.cached_at > self.ttl:
            del self._entries[box_id]
            return None
        return entry

    def evict_expired(self) -> int:
        now = self._clock()
        stale = [k for k, e in self._entries.items() if now - e.cached_at > self.ttl]
        for k in stale:
            del self._entries[k]
        return len(stale)

    async def mint_time(self, box_id: str) -> tuple[float, bool]:
        """(mint_time, estimated). Never raises."""
        entry = self._fresh(box_id)
        if entry is not None:
            return entry.mint_time, entry.estimated

        estimated = False
        try:
            found = await asyncio.wait_for(
                self.ledger.first_activity_time(box_id), timeout=self.lookup_timeout,
            )
        except asyncio.TimeoutError:
            logger.debug(f"Mint time lookup timed out for {box_id}")
            found = None
        except Exception as e:
            logger.debug(f"Mint time lookup failed for {box_id}: {e}")
            found = None

        now = self._clock()
        if found:
            mint_time = float(found)
        else:
            mint_time = now - random.random() * self.fallback_jitter
            estimated = True

        self._entries[box_id] = _MintEntry(mint_time=mint_time, cached_at=now, estimated=estimated)
        return mint_time, estimated


# ============================================================
# SWEEP
# ============================================================

class ReconciliationSweep:

    def __init__(
        self,
        ledger: LedgerClient,
        store: BoxStore,
        projects: dict[str, ProjectConfig],
        policy: SettlementPolicy = POLICY,
        mint_cache: Optional[MintTimeCache] = None,
        default_project_id: Optional[str] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.ledger = ledger
        self.store = store
        self.projects = projects
        self.policy = policy
        self.mint_cache = mint_cache or MintTimeCache(ledger, policy, clock)
        self.default_project_id = default_project_id or next(iter(projects), None)
        self._clock = clock

    def _project_for(self, record: Optional[Box]) -> Optional[ProjectConfig]:
        if record is not None and record.project_id in self.projects:
            return self.projects[record.project_id]
        if self.default_project_id:
            return self.projects.get(self.default_project_id)
        return None

    async def batch_status(self, box_ids: list[str]) -> dict:
        cap = self.policy.MAX_BOXES_PER_REQUEST
        if len(box_ids) > cap:
            raise PreconditionViolation(f"too many boxes requested: {len(box_ids)} > {cap} per request")

        results: dict[str, dict] = {}
        errors: dict[str, str] = {}
        chunk_size = self.policy.CHUNK_SIZE
        semaphore = asyncio.Semaphore(chunk_size)

        async def check(box_id: str):
            async with semaphore:
                try:
                    results[box_id] = await self._status_one(box_id)
                except Exception as e:
                    logger.warning(f"Status check failed for {box_id}: {e}")
                    errors[box_id] = str(e)
                    # state unknown: never report it as an unopened box
                    results[box_id] = {
                        "box_id": box_id,
                        "exists": None,
                        "phase": None,
                        "error": str(e),
                    }

        for i in range(0, len(box_ids), chunk_size):
            if i > 0:
                await asyncio.sleep(self.policy.CHUNK_DELAY_SECONDS)
            await asyncio.gather(*(check(b) for b in box_ids[i:i + chunk_size]))

        self.mint_cache.evict_expired()
        logger.info(f"Batch status: {len(results)} boxes checked, {len(errors)} errors")
        return {"results": results, "errors": errors}

    async def _status_one(self, box_id: str) -> dict:
        state = await self.ledger.read_box(box_id)
        record = self.store.get(box_id)
        cfg = self._project_for(record)

        committed_at = (state or {}).get("committed_at", 0)
        refund_eligible = bool(record and record.refund_eligible)
        phase = derive_phase(
            committed_at=committed_at,
            revealed=(state or {}).get("revealed", False),
            settled=(state or {}).get("settled", False),
            refund_eligible=refund_eligible,
            refunded_at=(state or {}).get("refunded_at", 0),
        )

        status = {
            "box_id": box_id,
            "exists": state is not None,
            "phase": phase.value,
            "box_state": state,
            "luck": (state or {}).get("luck", 0),
            "luck_estimated": False,
            "hold_seconds": 0,
        }

        if phase == BoxPhase.UNOPENED:
            created_at = (state or {}).get("created_at") or (record.created_at if record else 0)
            estimated = False
            if not created_at:
                created_at, estimated = await self.mint_cache.mint_time(box_id)
            hold = max(0, int(self._clock() - created_at))
            status["hold_seconds"] = hold
            status["luck_estimated"] = estimated
            if cfg is not None:
                status["luck"] = luck(hold, cfg.base_luck, cfg.max_luck, cfg.luck_interval_seconds)
        elif record is not None and record.reveal_failure_reason:
            status["reveal_failure_reason"] = record.reveal_failure_reason

        return status
