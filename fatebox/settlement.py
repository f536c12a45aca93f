"""
Settlement Executor

SETTLE  (REVEALED -> SETTLED)
  - vault must cover reward_amount (skipped for duds and honorary jackpots,
    which move no tokens)
  - payout account created on first payout (cost borne by the payout)
  - one ledger tx: transfer + settled flag
  - never partially paid; already settled -> transferred = 0

REFUND  (REFUND_ELIGIBLE -> REFUNDED)
  - box price goes back to the owner in one ledger tx

Jackpot winners may take the honorary path instead of tokens
(choose_honorary=True): recorded on the box, nothing transferred.
"""

import time
import logging
from dataclasses import dataclass, asdict
from typing import Callable, Optional

from .box import Box, BoxPhase, assert_transition
from .config import ProjectConfig
from .errors import (
    ExternalServiceError, InsufficientVaultBalance, LedgerRejected, PreconditionViolation,
)
from .ledger import CreatePayoutAccount, RefundBox, SettleAndTransfer
from .state import BoxStateReader

logger = logging.getLogger("fatebox.settlement")


@dataclass
class SettleResult:
    box_id: str
    transferred: int
    new_balance: Optional[int]
    honorary_choice: bool = False
    tx_hash: str = ""
    already_settled: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class RefundResult:
    box_id: str
    refunded: int
    refunded_at: float
    tx_hash: str = ""
    already_refunded: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


class SettlementExecutor:

    def __init__(self, state: BoxStateReader, projects: dict[str, ProjectConfig],
                 clock: Callable[[], float] = time.time):
        self.state = state
        self.projects = projects
        self._clock = clock

    def _project(self, box: Box) -> ProjectConfig:
        cfg = self.projects.get(box.project_id)
        if cfg is None:
            raise PreconditionViolation(f"unknown project {box.project_id}", box_id=box.box_id)
        return cfg

    async def _vault_balance(self, project_id: str) -> int:
        try:
            return await self.state.ledger.vault_balance(project_id)
        except Exception as e:
            raise ExternalServiceError(f"vault balance read failed: {e}") from e

    async def _ensure_payout_account(self, box: Box):
        ledger = self.state.ledger
        try:
            exists = await ledger.payout_account_exists(box.project_id, box.owner)
        except Exception as e:
            raise ExternalServiceError(f"payout account lookup failed: {e}", box_id=box.box_id) from e
        if exists:
            return

        result = await ledger.submit(CreatePayoutAccount(project_id=box.project_id, owner=box.owner))
        if not result.success:
            raise LedgerRejected(f"payout account creation failed: {result.error}",
                                 box_id=box.box_id, tx_hash=result.tx_hash)
        logger.info(f"Payout account created for {box.owner[:10]}... (project {box.project_id})")

    # ============================================================
    # SETTLE
    # ============================================================

    async def settle_box(self, box_id: str, caller: Optional[str] = None,
                         choose_honorary: bool = False) -> SettleResult:
        async with self.state.lock(box_id):
            box = await self.state.refresh(box_id)
            self._project(box)

            if box.settled:
                logger.info(f"Box {box_id} already settled — no transfer")
                return SettleResult(box_id=box_id, transferred=0, new_balance=None,
                                    honorary_choice=box.honorary_choice,
                                    tx_hash=box.settle_tx, already_settled=True)

            assert_transition(box, BoxPhase.SETTLED)
            if caller and caller.lower() != box.owner.lower():
                raise PreconditionViolation(f"{caller} is not the owner of box {box_id}",
                                            box_id=box_id)
            if choose_honorary and not box.is_jackpot:
                raise PreconditionViolation("honorary payout is only available for jackpots",
                                            box_id=box_id)

            amount = 0 if choose_honorary else box.reward_amount

            if amount > 0:
                balance = await self._vault_balance(box.project_id)
                if balance < amount:
                    logger.critical(
                        f"INSOLVENT VAULT: project {box.project_id} holds {balance}, "
                        f"box {box_id} owes {amount}"
                    )
                    raise InsufficientVaultBalance(
                        f"vault balance {balance} cannot cover reward {amount}",
                        box_id=box_id, required=amount, available=balance,
                    )
                await self._ensure_payout_account(box)

            result = await self.state.ledger.submit(SettleAndTransfer(
                box_id=box_id, project_id=box.project_id, owner=box.owner,
                amount=amount, choose_honorary=choose_honorary,
            ))
            if not result.success:
                logger.warning(f"Settle rejected by ledger for box {box_id}: {result.error}")
                raise LedgerRejected(result.error or "settle rejected", box_id=box_id,
                                     tx_hash=result.tx_hash)

            box.settled = True
            box.honorary_choice = choose_honorary
            box.settle_tx = result.tx_hash
            box.updated_at = self._clock()
            self.state.store.put(box)

            # the transfer is confirmed and recorded; a failed read only loses the figure
            try:
                new_balance = await self._vault_balance(box.project_id)
            except ExternalServiceError as e:
                logger.warning(f"Box {box_id} settled but vault balance read failed: {e}")
                new_balance = None
            logger.info(
                f"SETTLED box {box_id} | transferred={amount} | "
                f"honorary={choose_honorary} | vault={new_balance}"
            )
            return SettleResult(box_id=box_id, transferred=amount, new_balance=new_balance,
                                honorary_choice=choose_honorary, tx_hash=result.tx_hash)

    # ============================================================
    # REFUND
    # ============================================================

    async def refund_box(self, box_id: str, caller: Optional[str] = None) -> RefundResult:
        async with self.state.lock(box_id):
            box = await self.state.refresh(box_id)
            cfg = self._project(box)

            if box.refunded_at:
                return RefundResult(box_id=box_id, refunded=0, refunded_at=box.refunded_at,
                                    tx_hash=box.refund_tx, already_refunded=True)

            assert_transition(box, BoxPhase.REFUNDED)
            if caller and caller.lower() != box.owner.lower():
                raise PreconditionViolation(f"{caller} is not the owner of box {box_id}",
                                            box_id=box_id)

            balance = await self._vault_balance(box.project_id)
            if balance < cfg.box_price:
                logger.critical(
                    f"INSOLVENT VAULT: project {box.project_id} cannot refund box {box_id} "
                    f"({balance} < {cfg.box_price})"
                )
                raise InsufficientVaultBalance(
                    f"vault balance {balance} cannot cover refund {cfg.box_price}",
                    box_id=box_id, required=cfg.box_price, available=balance,
                )

            result = await self.state.ledger.submit(RefundBox(
                box_id=box_id, project_id=box.project_id, owner=box.owner, amount=cfg.box_price,
            ))
            if not result.success:
                raise LedgerRejected(result.error or "refund rejected", box_id=box_id,
                                     tx_hash=result.tx_hash)

            emitted = result.emitted_state or {}
            box.refunded_at = emitted.get("refunded_at") or self._clock()
            box.refund_tx = result.tx_hash
            box.updated_at = self._clock()
            self.state.store.put(box)

            logger.info(f"REFUNDED box {box_id} | amount={cfg.box_price} | owner={box.owner[:10]}...")
            return RefundResult(box_id=box_id, refunded=cfg.box_price,
                                refunded_at=box.refunded_at, tx_hash=result.tx_hash)
