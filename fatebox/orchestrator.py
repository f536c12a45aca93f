"""
Commit-Reveal Orchestrator

Drives a box through the two ledger transactions:

  COMMIT  (UNOPENED -> COMMITTED)
    1. fresh ledger read; already committed -> return the recorded result
    2. caller owns the box and really holds the box token
    3. oracle.create_round()
    4. luck from the box's mint time
    5. one ledger tx: round handle + luck, stamps committed_at

  REVEAL  (COMMITTED -> REVEALED)
    1. fresh ledger read; already revealed -> return the recorded outcome
    2. inside the reveal window
    3. oracle.reveal() with one bounded retry on "not ready"
    4. bytes -> roll, luck -> odds, odds + roll -> tier
    5. one ledger tx recording the outcome

Nothing is written to the record store before the ledger confirms. The wait
between commit and reveal is not held here: the two calls are independent
and reveal re-reads state, so it resumes safely after a restart.
"""

import time
import asyncio
import logging
from dataclasses import dataclass, asdict
from typing import Callable, Optional

from .box import Box, BoxPhase, assert_transition
from .config import POLICY, ProjectConfig
from .errors import (
    ExternalServiceError, LedgerRejected, OracleNotReady,
    PreconditionViolation, RevealWindowExpired,
)
from .ledger import CommitRandomness, RevealAndRecord
from .luck import luck_at
from .oracle import RandomnessOracle
from .resolver import percentage_from_bytes, resolve_outcome
from .state import BoxStateReader
from .tiers import Tier, interpolate_odds

logger = logging.getLogger("fatebox.orchestrator")


@dataclass
class CommitResult:
    box_id: str
    committed: bool
    luck: int
    round_handle: str
    committed_at: float
    reveal_deadline: float
    tx_hash: str = ""
    already_committed: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class RevealResult:
    box_id: str
    tier: str
    reward_tier: int
    reward_amount: int
    is_jackpot: bool
    random_percentage: float
    luck: int
    tx_hash: str = ""
    already_revealed: bool = False

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_box(cls, box: Box, already_revealed: bool) -> "RevealResult":
        tier = Tier(box.reward_tier if box.reward_tier is not None else Tier.DUD)
        return cls(
            box_id=box.box_id,
            tier=tier.label,
            reward_tier=int(tier),
            reward_amount=box.reward_amount,
            is_jackpot=box.is_jackpot,
            random_percentage=box.random_percentage or 0.0,
            luck=box.luck,
            tx_hash=box.reveal_tx,
            already_revealed=already_revealed,
        )


class CommitRevealOrchestrator:

    def __init__(
        self,
        state: BoxStateReader,
        oracle: RandomnessOracle,
        projects: dict[str, ProjectConfig],
        clock: Callable[[], float] = time.time,
        oracle_retry_delay: float = POLICY.ORACLE_RETRY_DELAY_SECONDS,
    ):
        self.state = state
        self.oracle = oracle
        self.projects = projects
        self._clock = clock
        self._retry_delay = oracle_retry_delay

    def project_for(self, box: Box) -> ProjectConfig:
        cfg = self.projects.get(box.project_id)
        if cfg is None:
            raise PreconditionViolation(f"unknown project {box.project_id}", box_id=box.box_id)
        return cfg

    # ============================================================
    # COMMIT
    # ============================================================

    async def commit_box(self, box_id: str, caller: Optional[str] = None) -> CommitResult:
        async with self.state.lock(box_id):
            box = await self.state.refresh(box_id)
            cfg = self.project_for(box)

            if box.committed_at:
                logger.info(f"Box {box_id} already committed — returning recorded commitment")
                return self._commit_result(box, cfg, already_committed=True)

            assert_transition(box, BoxPhase.COMMITTED)
            await self._verify_holder(box, caller)

            try:
                handle = await self.oracle.create_round(cfg.oracle_queue)
            except ExternalServiceError:
                raise
            except Exception as e:
                raise ExternalServiceError(f"oracle round creation failed: {e}", box_id=box_id) from e

            now = self._clock()
            box_luck = luck_at(box.created_at, cfg.base_luck, cfg.max_luck,
                               cfg.luck_interval_seconds, now=now)

            result = await self.state.ledger.submit(CommitRandomness(
                box_id=box_id, owner=box.owner, round_handle=handle, luck=box_luck,
            ))
            if not result.success:
                logger.warning(f"Commit rejected by ledger for box {box_id}: {result.error}")
                raise LedgerRejected(result.error or "commit rejected", box_id=box_id,
                                     tx_hash=result.tx_hash)

            emitted = result.emitted_state or {}
            box.committed_at = emitted.get("committed_at") or now
            box.luck = emitted.get("luck", box_luck)
            box.randomness_handle = handle
            box.commit_tx = result.tx_hash
            box.updated_at = now
            self.state.store.put(box)

            logger.info(
                f"COMMITTED box {box_id} | luck={box.luck} | round={handle} | "
                f"reveal by {box.reveal_deadline(cfg.reveal_window_seconds):.0f}"
            )
            return self._commit_result(box, cfg)

    async def _verify_holder(self, box: Box, caller: Optional[str]):
        if caller and caller.lower() != box.owner.lower():
            raise PreconditionViolation(f"{caller} is not the owner of box {box.box_id}",
                                        box_id=box.box_id)
        try:
            balance = await self.state.ledger.box_token_balance(box.owner, box.box_id)
        except Exception as e:
            raise ExternalServiceError(f"ownership check failed: {e}", box_id=box.box_id) from e
        if balance <= 0:
            raise PreconditionViolation(
                f"owner {box.owner} does not hold the token for box {box.box_id}",
                box_id=box.box_id,
            )

    def _commit_result(self, box: Box, cfg: ProjectConfig,
                       already_committed: bool = False) -> CommitResult:
        return CommitResult(
            box_id=box.box_id,
            committed=True,
            luck=box.luck,
            round_handle=box.randomness_handle,
            committed_at=box.committed_at,
            reveal_deadline=box.reveal_deadline(cfg.reveal_window_seconds),
            tx_hash=box.commit_tx,
            already_committed=already_committed,
        )

    # ============================================================
    # REVEAL
    # ============================================================

    async def reveal_box(self, box_id: str, caller: Optional[str] = None) -> RevealResult:
        async with self.state.lock(box_id):
            box = await self.state.refresh(box_id)
            cfg = self.project_for(box)

            if box.revealed:
                logger.info(f"Box {box_id} already revealed — returning recorded outcome")
                return RevealResult.from_box(box, already_revealed=True)

            if box.phase in (BoxPhase.REFUND_ELIGIBLE, BoxPhase.REFUNDED):
                raise RevealWindowExpired(
                    f"box {box_id} is {box.phase.value}; it can no longer be revealed",
                    box_id=box_id,
                )
            assert_transition(box, BoxPhase.REVEALED)

            if caller and caller.lower() != box.owner.lower():
                raise PreconditionViolation(f"{caller} is not the owner of box {box_id}",
                                            box_id=box_id)
            self._check_window(box, cfg)

            raw = await self._fetch_randomness(box, cfg)
            try:
                roll = percentage_from_bytes(raw)
            except ValueError as e:
                raise ExternalServiceError(f"oracle returned unusable randomness: {e}",
                                           box_id=box_id) from e
            odds = interpolate_odds(box.luck, cfg.tier_brackets, cfg.ceiling_bracket)
            outcome = resolve_outcome(odds, roll, cfg.box_price, cfg.payout_multipliers)

            result = await self.state.ledger.submit(RevealAndRecord(
                box_id=box_id,
                owner=box.owner,
                random_percentage=outcome.random_percentage,
                reward_amount=outcome.reward_amount,
                reward_tier=int(outcome.tier),
                is_jackpot=outcome.is_jackpot,
            ))
            if not result.success:
                logger.warning(f"Reveal rejected by ledger for box {box_id}: {result.error}")
                raise LedgerRejected(result.error or "reveal rejected", box_id=box_id,
                                     tx_hash=result.tx_hash)

            box.revealed = True
            box.random_percentage = outcome.random_percentage
            box.reward_amount = outcome.reward_amount
            box.reward_tier = int(outcome.tier)
            box.is_jackpot = outcome.is_jackpot
            box.reveal_tx = result.tx_hash
            box.updated_at = self._clock()
            self.state.store.put(box)

            logger.info(
                f"REVEALED box {box_id} | luck={box.luck} | roll={roll:.4f}% | "
                f"tier={outcome.tier.label} | reward={outcome.reward_amount}"
            )
            return RevealResult.from_box(box, already_revealed=False)

    def _check_window(self, box: Box, cfg: ProjectConfig):
        if box.reveal_window_elapsed(cfg.reveal_window_seconds, now=self._clock()):
            raise RevealWindowExpired(
                f"reveal window for box {box.box_id} closed at "
                f"{box.reveal_deadline(cfg.reveal_window_seconds):.0f}; awaiting refund",
                box_id=box.box_id,
            )

    async def _fetch_randomness(self, box: Box, cfg: ProjectConfig) -> bytes:
        """oracle.reveal() with exactly one retry. The retry never extends the deadline."""
        try:
            return await self._oracle_reveal(box)
        except OracleNotReady:
            logger.info(f"Oracle not ready for box {box.box_id}; retrying in {self._retry_delay}s")

        await asyncio.sleep(self._retry_delay)
        self._check_window(box, cfg)
        return await self._oracle_reveal(box)

    async def _oracle_reveal(self, box: Box) -> bytes:
        try:
            return await self.oracle.reveal(box.randomness_handle)
        except ExternalServiceError as e:
            e.box_id = e.box_id or box.box_id
            raise
        except Exception as e:
            raise ExternalServiceError(f"oracle reveal failed: {e}", box_id=box.box_id) from e
