"""
Box record and lifecycle state machine.

    UNOPENED -> COMMITTED -> REVEALED -> SETTLED
                    |
                    +-> REFUND_ELIGIBLE -> REFUNDED   (reveal deadline elapsed)

Transitions move forward only. The phase is derived from fields alone
(committed_at, revealed, settled, refund flags), never stored separately.
"""

import time
from dataclasses import dataclass, field, asdict, fields
from enum import Enum
from typing import Optional

from .errors import PreconditionViolation


class BoxPhase(str, Enum):
    UNOPENED = "unopened"
    COMMITTED = "committed"
    REVEALED = "revealed"
    SETTLED = "settled"
    REFUND_ELIGIBLE = "refund_eligible"
    REFUNDED = "refunded"


ALLOWED_TRANSITIONS: dict[BoxPhase, frozenset] = {
    BoxPhase.UNOPENED: frozenset({BoxPhase.COMMITTED}),
    BoxPhase.COMMITTED: frozenset({BoxPhase.REVEALED, BoxPhase.REFUND_ELIGIBLE}),
    BoxPhase.REVEALED: frozenset({BoxPhase.SETTLED}),
    BoxPhase.SETTLED: frozenset(),
    BoxPhase.REFUND_ELIGIBLE: frozenset({BoxPhase.REFUNDED}),
    BoxPhase.REFUNDED: frozenset(),
}

TERMINAL_PHASES = frozenset({BoxPhase.SETTLED, BoxPhase.REFUNDED})


@dataclass
class Box:
    box_id: str
    project_id: str
    owner: str
    created_at: float                       # mint time, origin of luck accrual
    committed_at: float = 0.0
    revealed: bool = False
    settled: bool = False
    refund_eligible: bool = False
    refunded_at: float = 0.0

    luck: int = 0
    randomness_handle: str = ""
    random_percentage: Optional[float] = None
    reward_amount: int = 0
    reward_tier: Optional[int] = None
    is_jackpot: bool = False
    honorary_choice: bool = False

    commit_tx: str = ""
    reveal_tx: str = ""
    settle_tx: str = ""
    refund_tx: str = ""
    reveal_failure_reason: str = ""
    updated_at: float = field(default_factory=time.time)

    @property
    def phase(self) -> BoxPhase:
        return derive_phase(
            committed_at=self.committed_at,
            revealed=self.revealed,
            settled=self.settled,
            refund_eligible=self.refund_eligible,
            refunded_at=self.refunded_at,
        )

    def reveal_deadline(self, reveal_window_seconds: float) -> float:
        """0 when never committed."""
        if not self.committed_at:
            return 0.0
        return self.committed_at + reveal_window_seconds

    def reveal_window_elapsed(self, reveal_window_seconds: float,
                              now: Optional[float] = None) -> bool:
        if not self.committed_at:
            return False
        now = time.time() if now is None else now
        return now - self.committed_at > reveal_window_seconds

    def to_dict(self) -> dict:
        data = asdict(self)
        data["phase"] = self.phase.value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Box":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


def derive_phase(committed_at: float = 0, revealed: bool = False, settled: bool = False,
                 refund_eligible: bool = False, refunded_at: float = 0) -> BoxPhase:
    if refunded_at:
        return BoxPhase.REFUNDED
    if not committed_at:
        return BoxPhase.UNOPENED
    if settled:
        return BoxPhase.SETTLED
    if revealed:
        return BoxPhase.REVEALED
    if refund_eligible:
        return BoxPhase.REFUND_ELIGIBLE
    return BoxPhase.COMMITTED


def can_transition(current: BoxPhase, target: BoxPhase) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def assert_transition(box: Box, target: BoxPhase) -> None:
    current = box.phase
    if not can_transition(current, target):
        raise PreconditionViolation(
            f"box {box.box_id} cannot move {current.value} -> {target.value}",
            box_id=box.box_id,
        )


def check_invariants(box: Box) -> list[str]:
    """Field-level invariants. Empty list means the record is consistent."""
    problems = []
    if box.revealed and not box.committed_at:
        problems.append("revealed without commit")
    if box.settled and not box.revealed:
        problems.append("settled without reveal")
    if (box.reward_amount > 0 or box.is_jackpot) and not box.revealed:
        problems.append("outcome recorded without reveal")
    if box.refunded_at and not box.refund_eligible:
        problems.append("refunded without refund eligibility")
    if box.refund_eligible and box.revealed:
        problems.append("refund-eligible box was revealed")
    if box.honorary_choice and not box.is_jackpot:
        problems.append("honorary choice on non-jackpot box")
    return problems
