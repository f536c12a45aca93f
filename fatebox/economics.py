"""
Economics - EV, RTP, House Edge, Vault Funding & Reserve

Used for:
1. Minimum vault funding at project creation
2. Reserve for unsettled boxes when the owner withdraws
3. EV/RTP/house-edge figures for dashboards

Reserve sizing assumes every unrevealed box is opened at the best-odds
bracket (most favourable to the player). That bracket's EV, taken as a
multiple of box price, is the per-box reserve. Boxes whose payout is
already fixed (revealed reward, pending refund) are reserved at that
exact amount.

Money math runs on Decimal so that e.g. 0.94 * 10_000_000 ceils to
9_400_000 and not 9_400_001.
"""

import math
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Union

from .config import POLICY, PayoutMultipliers, ProjectConfig, TierBracket
from .tiers import TierOdds

logger = logging.getLogger("fatebox.economics")

Odds = Union[TierOdds, TierBracket]

_HUNDRED = Decimal(100)


def _d(value) -> Decimal:
    return Decimal(str(value))


def _tier_ev_exact(odds: Odds, multipliers: PayoutMultipliers) -> Decimal:
    dud, rebate, breakeven, profit = (_d(odds.dud), _d(odds.rebate),
                                      _d(odds.breakeven), _d(odds.profit))
    jackpot = max(Decimal(0), _HUNDRED - dud - rebate - breakeven - profit)
    return (
        dud / _HUNDRED * _d(multipliers.dud)
        + rebate / _HUNDRED * _d(multipliers.rebate)
        + breakeven / _HUNDRED * _d(multipliers.breakeven)
        + profit / _HUNDRED * _d(multipliers.profit)
        + jackpot / _HUNDRED * _d(multipliers.jackpot)
    )


# ============================================================
# EV / RTP / HOUSE EDGE
# ============================================================

def tier_ev(odds: Odds, multipliers: PayoutMultipliers) -> float:
    """Expected payout as a multiple of box price (0.94 = 94% RTP)."""
    return float(_tier_ev_exact(odds, multipliers))


def rtp(odds: Odds, multipliers: PayoutMultipliers) -> float:
    return float(_tier_ev_exact(odds, multipliers) * _HUNDRED)


def house_edge(odds: Odds, multipliers: PayoutMultipliers) -> float:
    return float(_HUNDRED - _tier_ev_exact(odds, multipliers) * _HUNDRED)


def tier_metrics(config: ProjectConfig) -> dict:
    """EV/RTP/house edge per calibration bracket, for dashboards."""
    named = [(f"tier{i + 1}", b) for i, b in enumerate(config.tier_brackets)]
    if config.ceiling_bracket is not None:
        named.append(("ceiling", config.ceiling_bracket))

    metrics = {}
    for name, bracket in named:
        ev = _tier_ev_exact(bracket, config.payout_multipliers)
        metrics[name] = {
            "luck_threshold": bracket.luck_threshold,
            "ev": float(ev),
            "rtp": float(ev * _HUNDRED),
            "house_edge": float(_HUNDRED - ev * _HUNDRED),
        }
    return metrics


# ============================================================
# VAULT FUNDING & RESERVE
# ============================================================

def minimum_vault_funding(box_price: int, multiple: Optional[int] = None) -> int:
    """
    box_price * FUNDING_MULTIPLE (30 by default).

    Conservative policy heuristic, not a bound derived from tail
    probabilities. Recalibrate through FATEBOX_FUNDING_MULTIPLE.
    """
    if box_price <= 0:
        raise ValueError(f"box_price must be > 0 (got {box_price})")
    multiple = POLICY.FUNDING_MULTIPLE if multiple is None else multiple
    return int(box_price) * int(multiple)


def best_odds_bracket(config: ProjectConfig) -> TierBracket:
    """The bracket most favourable to the player (highest EV)."""
    candidates = list(config.tier_brackets)
    if config.ceiling_bracket is not None:
        candidates.append(config.ceiling_bracket)
    return max(candidates, key=lambda b: _tier_ev_exact(b, config.payout_multipliers))


def expected_reserve(odds: Odds, multipliers: PayoutMultipliers) -> Decimal:
    """Per-box reserve multiplier: EV of the given (best-odds) bracket."""
    return _tier_ev_exact(odds, multipliers)


def project_reserve_multiplier(config: ProjectConfig) -> Decimal:
    return expected_reserve(best_odds_bracket(config), config.payout_multipliers)


def unopened_box_reserve(box_price: int, count: int, reserve_multiplier) -> int:
    """ceil(box_price * count * reserve_multiplier)."""
    if count <= 0:
        return 0
    exact = Decimal(int(box_price)) * Decimal(int(count)) * _d(reserve_multiplier)
    return int(math.ceil(exact))


def withdrawal_reserve(box_price: int, reserve_multiplier, unopened_count: int,
                       refund_eligible_count: int = 0, revealed_rewards: int = 0) -> int:
    """
    Everything the vault must keep back for unsettled boxes.

    Unrevealed boxes are reserved at the best-odds EV. Refund-eligible boxes
    owe their full price, and revealed boxes owe their exact reward.
    """
    return (
        unopened_box_reserve(box_price, unopened_count, reserve_multiplier)
        + int(box_price) * max(0, int(refund_eligible_count))
        + max(0, int(revealed_rewards))
    )


def commission_amount(box_price: int, commission_bps: int) -> int:
    """Platform commission on one box sale, floored to smallest unit."""
    return int(box_price) * int(commission_bps) // 10_000


# ============================================================
# WITHDRAWAL EVALUATION
# ============================================================

@dataclass(frozen=True)
class WithdrawalDecision:
    approved: bool
    amount: int
    vault_balance: int
    reserve: int
    unopened_count: int
    max_withdrawable: int
    reason: str = ""
    refund_eligible_count: int = 0
    revealed_rewards: int = 0

    def to_dict(self) -> dict:
        return {
            "approved": self.approved,
            "amount": self.amount,
            "vault_balance": self.vault_balance,
            "reserve": self.reserve,
            "unopened_count": self.unopened_count,
            "refund_eligible_count": self.refund_eligible_count,
            "revealed_rewards": self.revealed_rewards,
            "max_withdrawable": self.max_withdrawable,
            "reason": self.reason,
        }


def evaluate_withdrawal(vault_balance: int, amount: int, box_price: int,
                        unopened_count: int, reserve_multiplier,
                        refund_eligible_count: int = 0,
                        revealed_rewards: int = 0) -> WithdrawalDecision:
    """
    Approve iff vault_balance - amount >= reserve for all unsettled boxes.

    Pure function of its inputs. Callers must pass a freshly read balance
    and fresh liabilities every time (never cache a decision).
    """
    reserve = withdrawal_reserve(
        box_price, reserve_multiplier, unopened_count,
        refund_eligible_count=refund_eligible_count,
        revealed_rewards=revealed_rewards,
    )
    max_withdrawable = max(0, vault_balance - reserve)

    if amount <= 0:
        reason = f"invalid amount: {amount}"
        approved = False
    elif vault_balance - amount < reserve:
        reason = (
            f"withdrawal of {amount} would leave {vault_balance - amount} "
            f"< reserve {reserve} for unsettled boxes"
        )
        approved = False
    else:
        reason = "approved"
        approved = True

    return WithdrawalDecision(
        approved=approved,
        amount=amount,
        vault_balance=vault_balance,
        reserve=reserve,
        unopened_count=unopened_count,
        max_withdrawable=max_withdrawable,
        reason=reason,
        refund_eligible_count=refund_eligible_count,
        revealed_rewards=revealed_rewards,
    )
