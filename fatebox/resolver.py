"""
Outcome Resolver

Maps a roll r in [0, 100] plus tier odds to exactly one tier. Thresholds are
accumulated in canonical order (dud, rebate, breakeven, profit, jackpot) and
the first tier whose cumulative upper bound is >= r wins, so a roll sitting
exactly on a boundary lands in the lower tier. Tiers at 0% never match.
Jackpot is the fall-through.

Oracle bytes -> roll: the first 4 bytes, read as an unsigned little-endian
u32, divided by 0xFFFFFFFF and scaled to 0-100.
"""

import math
from dataclasses import dataclass
from decimal import Decimal

from .config import PayoutMultipliers
from .tiers import Tier, TierOdds

U32_MAX = 0xFFFFFFFF


@dataclass(frozen=True)
class Outcome:
    tier: Tier
    multiplier: float
    reward_amount: int
    random_percentage: float

    @property
    def is_jackpot(self) -> bool:
        return self.tier == Tier.JACKPOT

    def to_dict(self) -> dict:
        return {
            "tier": self.tier.label,
            "reward_tier": int(self.tier),
            "multiplier": self.multiplier,
            "reward_amount": self.reward_amount,
            "is_jackpot": self.is_jackpot,
            "random_percentage": self.random_percentage,
        }


def percentage_from_bytes(raw: bytes) -> float:
    """Roll in [0, 100] from raw oracle bytes."""
    if len(raw) < 4:
        raise ValueError(f"need at least 4 random bytes, got {len(raw)}")
    value = int.from_bytes(raw[:4], "little", signed=False)
    return value / U32_MAX * 100.0


def select_tier(odds: TierOdds, roll: float) -> Tier:
    cumulative = 0.0
    for tier, pct in odds.by_tier()[:-1]:
        if pct <= 0:
            # zero-width tier: a roll of exactly 0 must not land here
            continue
        cumulative += pct
        if roll <= cumulative:
            return tier
    return Tier.JACKPOT


def multiplier_for(tier: Tier, multipliers: PayoutMultipliers) -> float:
    return getattr(multipliers, tier.label)


def reward_for(tier: Tier, box_price: int, multipliers: PayoutMultipliers) -> int:
    """floor(box_price * multiplier) in smallest token units."""
    exact = Decimal(box_price) * Decimal(str(multiplier_for(tier, multipliers)))
    return int(math.floor(exact))


def resolve_outcome(odds: TierOdds, roll: float, box_price: int,
                    multipliers: PayoutMultipliers) -> Outcome:
    if not 0.0 <= roll <= 100.0:
        raise ValueError(f"roll out of range: {roll}")
    tier = select_tier(odds, roll)
    return Outcome(
        tier=tier,
        multiplier=multiplier_for(tier, multipliers),
        reward_amount=reward_for(tier, box_price, multipliers),
        random_percentage=roll,
    )


def tier_ranges(odds: TierOdds) -> list[tuple[Tier, float, float]]:
    """(tier, lower, upper) cumulative ranges covering [0, 100]."""
    ranges = []
    lower = 0.0
    for tier, pct in odds.by_tier():
        upper = lower + pct
        ranges.append((tier, lower, upper))
        lower = upper
    return ranges
