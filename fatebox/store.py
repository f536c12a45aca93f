"""
Box record store.

The engine only needs simple get/put plus a few filtered queries. The
ledger stays authoritative; this store is the read path for the sweep and
the watchdog, refreshed after every confirmed transition.

JsonBoxStore keeps everything in one JSON file under the data dir and
rewrites it atomically on every put.
"""

import json
import os
import logging
import tempfile
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .box import Box

logger = logging.getLogger("fatebox.store")


@dataclass(frozen=True)
class Liabilities:
    """What a project's vault still owes, split by how it is known."""
    unrevealed: int = 0             # outcome unknown, reserved at best-odds EV
    refund_eligible: int = 0        # owed the full box price
    revealed_rewards: int = 0       # exact reward_amount of revealed, unsettled boxes


class BoxStore(ABC):

    @abstractmethod
    def get(self, box_id: str) -> Optional[Box]:
        ...

    @abstractmethod
    def put(self, box: Box) -> None:
        ...

    @abstractmethod
    def committed_unrevealed_before(self, cutoff: float,
                                    project_id: Optional[str] = None) -> list[Box]:
        """Committed, not revealed, not yet refund-eligible, committed before cutoff."""

    @abstractmethod
    def boxes_for_owner(self, owner: str, page: int = 0, page_size: int = 50) -> list[Box]:
        ...

    @abstractmethod
    def count_unsettled(self, project_id: str) -> int:
        """Boxes that may still pay out: neither settled nor refunded."""

    @abstractmethod
    def outstanding(self, project_id: str) -> Liabilities:
        """Unsettled boxes of a project grouped by how their payout is known."""


class JsonBoxStore(BoxStore):

    def __init__(self, data_dir: Path):
        self.path = Path(data_dir) / "boxes.json"
        self._boxes: dict[str, Box] = {}
        self._lock = threading.Lock()
        self._load()

    def _load(self):
        if not self.path.exists():
            return
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            self._boxes = {b["box_id"]: Box.from_dict(b) for b in raw.get("boxes", [])}
            logger.info(f"Loaded {len(self._boxes)} boxes from {self.path}")
        except Exception as e:
            logger.warning(f"Failed to load box store {self.path}: {e}")

    def _save(self):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(
            {"boxes": [b.to_dict() for b in self._boxes.values()]}, indent=2,
        )
        fd, tmp = tempfile.mkstemp(dir=self.path.parent, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
            os.replace(tmp, self.path)
        except Exception:
            Path(tmp).unlink(missing_ok=True)
            raise

    def get(self, box_id: str) -> Optional[Box]:
        with self._lock:
            box = self._boxes.get(box_id)
            return Box.from_dict(box.to_dict()) if box else None

    def put(self, box: Box) -> None:
        with self._lock:
            self._boxes[box.box_id] = Box.from_dict(box.to_dict())
            self._save()

    def all(self) -> list[Box]:
        with self._lock:
            return [Box.from_dict(b.to_dict()) for b in self._boxes.values()]

    def committed_unrevealed_before(self, cutoff: float,
                                    project_id: Optional[str] = None) -> list[Box]:
        return [
            b for b in self.all()
            if b.committed_at
            and b.committed_at < cutoff
            and not b.revealed
            and not b.refund_eligible
            and not b.refunded_at
            and (project_id is None or b.project_id == project_id)
        ]

    def boxes_for_owner(self, owner: str, page: int = 0, page_size: int = 50) -> list[Box]:
        owned = sorted(
            (b for b in self.all() if b.owner.lower() == owner.lower()),
            key=lambda b: b.created_at,
        )
        start = max(0, page) * page_size
        return owned[start:start + page_size]

    def count_unsettled(self, project_id: str) -> int:
        return sum(
            1 for b in self.all()
            if b.project_id == project_id
            and not b.settled
            and not b.refunded_at
        )

    def outstanding(self, project_id: str) -> Liabilities:
        unrevealed = refund_eligible = revealed_rewards = 0
        for b in self.all():
            if b.project_id != project_id or b.settled or b.refunded_at:
                continue
            if b.revealed:
                revealed_rewards += b.reward_amount
            elif b.refund_eligible:
                refund_eligible += 1
            else:
                unrevealed += 1
        return Liabilities(unrevealed, refund_eligible, revealed_rewards)
