"""
Tier Probability Model

Turns a luck score into odds over the five outcome tiers by linear
interpolation between calibration brackets:

  luck <= b1.threshold                    -> b1 as configured
  b1.threshold < luck <= b2.threshold     -> lerp(b1, b2)
  b2.threshold < luck <= b3.threshold     -> lerp(b2, b3)
  luck > b3.threshold                     -> lerp(b3, ceiling) if a ceiling
                                             bracket is configured, else b3 flat

Jackpot is always the remainder (100 - sum of the other four, floored at 0).
"""

from dataclasses import dataclass
from enum import IntEnum
from typing import Optional, Sequence

from .config import TierBracket


class Tier(IntEnum):
    """Canonical resolution order. Do not reorder: it decides boundary rolls."""
    DUD = 0
    REBATE = 1
    BREAKEVEN = 2
    PROFIT = 3
    JACKPOT = 4

    @property
    def label(self) -> str:
        return self.name.lower()


@dataclass(frozen=True)
class TierOdds:
    """Percentages (0-100) for the four explicit tiers; jackpot is derived."""
    dud: float
    rebate: float
    breakeven: float
    profit: float

    @property
    def jackpot(self) -> float:
        return max(0.0, 100.0 - self.dud - self.rebate - self.breakeven - self.profit)

    def as_dict(self) -> dict[str, float]:
        return {
            "dud": self.dud,
            "rebate": self.rebate,
            "breakeven": self.breakeven,
            "profit": self.profit,
            "jackpot": self.jackpot,
        }

    def by_tier(self) -> list[tuple[Tier, float]]:
        """Tier percentages in canonical order."""
        return [
            (Tier.DUD, self.dud),
            (Tier.REBATE, self.rebate),
            (Tier.BREAKEVEN, self.breakeven),
            (Tier.PROFIT, self.profit),
            (Tier.JACKPOT, self.jackpot),
        ]

    @classmethod
    def from_bracket(cls, bracket: TierBracket) -> "TierOdds":
        return _normalized(bracket.dud, bracket.rebate, bracket.breakeven, bracket.profit)


def _clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


def _normalized(dud: float, rebate: float, breakeven: float, profit: float) -> TierOdds:
    """Clamp each percentage to [0, 100] and scale down if the four exceed 100."""
    values = [_clamp(v) for v in (dud, rebate, breakeven, profit)]
    total = sum(values)
    if total > 100.0:
        values = [v * 100.0 / total for v in values]
    return TierOdds(*values)


def _lerp(a: float, b: float, ratio: float) -> float:
    return a + (b - a) * ratio


def _interpolate(lower: TierBracket, upper: TierBracket, luck_score: float) -> TierOdds:
    span = upper.luck_threshold - lower.luck_threshold
    ratio = 1.0 if span <= 0 else (luck_score - lower.luck_threshold) / span
    ratio = _clamp(ratio, 0.0, 1.0)
    return _normalized(
        _lerp(lower.dud, upper.dud, ratio),
        _lerp(lower.rebate, upper.rebate, ratio),
        _lerp(lower.breakeven, upper.breakeven, ratio),
        _lerp(lower.profit, upper.profit, ratio),
    )


def interpolate_odds(
    luck_score: int,
    brackets: Sequence[TierBracket],
    ceiling: Optional[TierBracket] = None,
) -> TierOdds:
    """Odds for a luck score. Deterministic, no side effects."""
    if not brackets:
        raise ValueError("at least one tier bracket is required")

    luck_score = max(0, luck_score)
    ordered = sorted(brackets, key=lambda b: b.luck_threshold)

    if luck_score <= ordered[0].luck_threshold:
        return TierOdds.from_bracket(ordered[0])

    for lower, upper in zip(ordered, ordered[1:]):
        if luck_score <= upper.luck_threshold:
            return _interpolate(lower, upper, luck_score)

    top = ordered[-1]
    if ceiling is not None and ceiling.luck_threshold > top.luck_threshold:
        return _interpolate(top, ceiling, luck_score)
    return TierOdds.from_bracket(top)


def validate_brackets(brackets: Sequence[TierBracket],
                      ceiling: Optional[TierBracket] = None) -> list[str]:
    """Return a list of problems with a bracket set (empty = valid)."""
    problems = []
    thresholds = [b.luck_threshold for b in brackets]
    if thresholds != sorted(thresholds) or len(set(thresholds)) != len(thresholds):
        problems.append(f"luck thresholds must be strictly ascending: {thresholds}")

    named = [(f"bracket[{i}]", b) for i, b in enumerate(brackets)]
    if ceiling is not None:
        named.append(("ceiling", ceiling))
        if thresholds and ceiling.luck_threshold <= max(thresholds):
            problems.append("ceiling threshold must exceed the last bracket threshold")

    for name, b in named:
        values = (b.dud, b.rebate, b.breakeven, b.profit)
        if any(v < 0 or v > 100 for v in values):
            problems.append(f"{name}: percentages must be within [0, 100]")
        if sum(values) > 100:
            problems.append(f"{name}: percentages sum to {sum(values)} (> 100)")
    return problems
