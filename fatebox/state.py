"""
Fresh box state: record store merged with a live ledger read.

Every transition starts here. The ledger wins on every field it knows
about; the store contributes what the ledger does not keep (the oracle's
round handle string, tx references, refund-eligibility flags).
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from .box import Box
from .errors import BoxNotFound, ExternalServiceError, PreconditionViolation
from .ledger import LedgerClient
from .store import BoxStore

logger = logging.getLogger("fatebox.state")

_LEDGER_FIELDS = (
    "owner", "created_at", "committed_at", "luck", "revealed", "settled",
    "reward_amount", "reward_tier", "is_jackpot", "random_percentage",
    "honorary_choice", "refunded_at",
)


def apply_ledger_state(box: Box, state: dict) -> bool:
    """Overwrite box fields with ledger values. Returns True if anything changed."""
    changed = False
    for name in _LEDGER_FIELDS:
        if name not in state:
            continue
        value = state[name]
        if name == "created_at" and not value:
            continue
        if getattr(box, name) != value:
            setattr(box, name, value)
            changed = True
    # the ledger stores a hashed handle; keep the oracle's own handle if we have it
    if state.get("randomness_handle") and not box.randomness_handle:
        box.randomness_handle = state["randomness_handle"]
        changed = True
    return changed


class _BoxLock:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = asyncio.Lock()
        self.users = 0


class BoxStateReader:
    """Store + ledger reads, and per-box locks shared by all transitions."""

    def __init__(self, ledger: LedgerClient, store: BoxStore):
        self.ledger = ledger
        self.store = store
        self._locks: dict[str, _BoxLock] = {}

    @asynccontextmanager
    async def lock(self, box_id: str):
        """
        Serializes racing callers in this process. The ledger arbitrates across processes.

        An entry lives only while someone holds or waits on it.
        """
        entry = self._locks.get(box_id)
        if entry is None:
            entry = self._locks[box_id] = _BoxLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[box_id]

    @property
    def active_locks(self) -> int:
        return len(self._locks)

    async def read_ledger(self, box_id: str) -> Optional[dict]:
        try:
            return await self.ledger.read_box(box_id)
        except Exception as e:
            raise ExternalServiceError(f"ledger read failed for {box_id}: {e}", box_id=box_id) from e

    async def track(self, box_id: str, project_id: str) -> Box:
        """Start tracking a purchased box. Owner and mint time come from the ledger."""
        existing = self.store.get(box_id)
        if existing is not None:
            return await self.refresh(box_id, require_on_ledger=False)

        state = await self.read_ledger(box_id)
        if state is None:
            raise BoxNotFound(f"box {box_id} does not exist on the ledger", box_id=box_id)

        box = Box(box_id=box_id, project_id=project_id, owner=state.get("owner", ""),
                  created_at=state.get("created_at") or 0.0)
        apply_ledger_state(box, state)
        self.store.put(box)
        logger.info(f"Tracking box {box_id} (project {project_id}, phase={box.phase.value})")
        return box

    async def refresh(self, box_id: str, require_on_ledger: bool = True) -> Box:
        box = self.store.get(box_id)
        if box is None:
            raise BoxNotFound(f"box {box_id} not found", box_id=box_id)

        state = await self.read_ledger(box_id)
        if state is None:
            if require_on_ledger:
                raise PreconditionViolation(f"box {box_id} does not exist on the ledger", box_id=box_id)
            return box

        if apply_ledger_state(box, state):
            logger.info(f"Box {box_id}: record store refreshed from ledger (phase={box.phase.value})")
            self.store.put(box)
        return box
