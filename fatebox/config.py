"""
Project Configuration - Luck, Odds, Payouts, Policy

Every project (tenant) ships one ProjectConfig:
- Luck accrual parameters (base, max, seconds per +1)
- Three calibration brackets of tier percentages, plus an optional ceiling
- Payout multipliers per tier
- Reveal window and commission rate

Platform-wide policy constants live in SettlementPolicy (frozen, like the
rest of the config) and may be overridden from the environment so that
operators can recalibrate without a redeploy.
"""

import os
import json
import logging
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Final, Optional

logger = logging.getLogger("fatebox.config")


# ============================================================
# POLICY: platform-wide constants
# ============================================================

@dataclass(frozen=True)
class SettlementPolicy:
    """Frozen dataclass = immutable at runtime. Build a new one to change it."""

    # --- VAULT FUNDING ---
    # Heuristic, not a derived bound: 30x box price absorbs early-run variance
    # until the house edge accumulates.
    FUNDING_MULTIPLE: int = 30

    # --- COMMIT / REVEAL ---
    DEFAULT_REVEAL_WINDOW_SECONDS: int = 3600
    ORACLE_RETRY_DELAY_SECONDS: float = 3.0     # single bounded retry on "not ready"

    # --- RECONCILIATION SWEEP ---
    MAX_BOXES_PER_REQUEST: int = 50
    CHUNK_SIZE: int = 5
    CHUNK_DELAY_SECONDS: float = 0.2
    MINT_TIME_CACHE_TTL_SECONDS: float = 300.0
    MINT_LOOKUP_TIMEOUT_SECONDS: float = 3.0
    MINT_FALLBACK_JITTER_SECONDS: float = 300.0

    # --- WATCHDOG ---
    WATCHDOG_INTERVAL_SECONDS: int = 300


def load_policy() -> SettlementPolicy:
    """Policy with environment overrides applied."""
    overrides = {}
    funding = os.getenv("FATEBOX_FUNDING_MULTIPLE")
    if funding:
        overrides["FUNDING_MULTIPLE"] = int(funding)
    window = os.getenv("FATEBOX_REVEAL_WINDOW_SECONDS")
    if window:
        overrides["DEFAULT_REVEAL_WINDOW_SECONDS"] = int(window)
    interval = os.getenv("WATCHDOG_INTERVAL")
    if interval:
        overrides["WATCHDOG_INTERVAL_SECONDS"] = int(interval)
    if overrides:
        logger.info(f"Settlement policy overrides: {overrides}")
    return SettlementPolicy(**overrides)


POLICY: Final[SettlementPolicy] = load_policy()


# ============================================================
# PROJECT CONFIG
# ============================================================

@dataclass(frozen=True)
class TierBracket:
    """
    One calibration bracket. Percentages are 0-100; jackpot is the remainder.
    luck_threshold is the upper luck bound this bracket applies at.
    """
    luck_threshold: int
    dud: float = 0.0
    rebate: float = 0.0
    breakeven: float = 0.0
    profit: float = 0.0

    @property
    def jackpot(self) -> float:
        return max(0.0, 100.0 - self.dud - self.rebate - self.breakeven - self.profit)


@dataclass(frozen=True)
class PayoutMultipliers:
    """Multiples of box price paid per tier."""
    dud: float = 0.0
    rebate: float = 0.5
    breakeven: float = 1.0
    profit: float = 1.5
    jackpot: float = 4.0


DEFAULT_BRACKETS: Final[tuple[TierBracket, ...]] = (
    TierBracket(luck_threshold=5, dud=0, rebate=72, breakeven=17, profit=9),
    TierBracket(luck_threshold=13, dud=0, rebate=57, breakeven=26, profit=15),
    TierBracket(luck_threshold=60, dud=0, rebate=44, breakeven=34, profit=20),
)


@dataclass(frozen=True)
class ProjectConfig:
    project_id: str
    box_price: int                              # smallest token unit
    token_decimals: int = 6
    payment_token: str = ""
    base_luck: int = 5
    max_luck: int = 60
    luck_interval_seconds: int = 10800          # +1 luck every 3 hours
    tier_brackets: tuple[TierBracket, ...] = DEFAULT_BRACKETS
    ceiling_bracket: Optional[TierBracket] = None
    payout_multipliers: PayoutMultipliers = field(default_factory=PayoutMultipliers)
    reveal_window_seconds: int = POLICY.DEFAULT_REVEAL_WINDOW_SECONDS
    commission_bps: int = 0
    oracle_queue: str = ""

    def __post_init__(self):
        if self.box_price <= 0:
            raise ValueError(f"box_price must be > 0 (got {self.box_price})")
        if self.max_luck < self.base_luck:
            raise ValueError(f"max_luck {self.max_luck} < base_luck {self.base_luck}")
        if len(self.tier_brackets) != 3:
            raise ValueError(f"expected 3 tier brackets, got {len(self.tier_brackets)}")
        if not 0 <= self.commission_bps <= 10_000:
            raise ValueError(f"commission_bps out of range: {self.commission_bps}")
        if self.reveal_window_seconds <= 0:
            raise ValueError("reveal_window_seconds must be positive")

    def to_dict(self) -> dict:
        return asdict(self)


def _bracket_from_dict(raw: dict) -> TierBracket:
    return TierBracket(
        luck_threshold=int(raw["luck_threshold"]),
        dud=float(raw.get("dud", 0)),
        rebate=float(raw.get("rebate", 0)),
        breakeven=float(raw.get("breakeven", 0)),
        profit=float(raw.get("profit", 0)),
    )


def project_config_from_dict(raw: dict) -> ProjectConfig:
    """Build a ProjectConfig from the externally supplied option set."""
    brackets = raw.get("tier_brackets")
    ceiling = raw.get("ceiling_bracket")
    multipliers = raw.get("payout_multipliers") or {}

    return ProjectConfig(
        project_id=str(raw["project_id"]),
        box_price=int(raw["box_price"]),
        token_decimals=int(raw.get("token_decimals", 6)),
        payment_token=raw.get("payment_token", ""),
        base_luck=int(raw.get("base_luck", 5)),
        max_luck=int(raw.get("max_luck", 60)),
        luck_interval_seconds=int(raw.get("luck_interval_seconds", 10800)),
        tier_brackets=(
            tuple(_bracket_from_dict(b) for b in brackets) if brackets else DEFAULT_BRACKETS
        ),
        ceiling_bracket=_bracket_from_dict(ceiling) if ceiling else None,
        payout_multipliers=PayoutMultipliers(**{
            k: float(v) for k, v in multipliers.items()
        }),
        reveal_window_seconds=int(
            raw.get("reveal_window_seconds", POLICY.DEFAULT_REVEAL_WINDOW_SECONDS)
        ),
        commission_bps=int(raw.get("commission_bps", 0)),
        oracle_queue=raw.get("oracle_queue", ""),
    )


def load_project_configs(path: Path) -> dict[str, ProjectConfig]:
    """
    Load {project_id: ProjectConfig} from a JSON file.

    Accepts either a single project object or {"projects": [...]}.
    """
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    entries = data.get("projects", [data]) if isinstance(data, dict) else data
    configs = {}
    for raw in entries:
        cfg = project_config_from_dict(raw)
        configs[cfg.project_id] = cfg
    logger.info(f"Loaded {len(configs)} project configs from {path}")
    return configs
