"""
Vault Guard - project vault funding and owner withdrawals.

Every withdrawal request is checked against a fresh on-ledger balance and a
fresh view of unsettled boxes. Nothing here is cached: two withdrawals a
second apart each re-read both numbers.

Rules:
- minimum funding at project creation = box_price x FUNDING_MULTIPLE
- balance - amount must stay >= reserve: best-odds EV per unrevealed box,
  box price per refund-eligible box, exact reward per revealed box
- a denied withdrawal never reaches the ledger
"""

import logging
from typing import Optional

from . import economics
from .config import POLICY, ProjectConfig, SettlementPolicy
from .errors import (
    ExternalServiceError, InsufficientVaultBalance, LedgerRejected, PreconditionViolation,
)
from .economics import WithdrawalDecision
from .ledger import LedgerClient, WithdrawFromVault
from .store import BoxStore

logger = logging.getLogger("fatebox.vault")


class VaultGuard:

    def __init__(self, ledger: LedgerClient, store: BoxStore,
                 projects: dict[str, ProjectConfig], policy: SettlementPolicy = POLICY):
        self.ledger = ledger
        self.store = store
        self.projects = projects
        self.policy = policy

    def _project(self, project_id: str) -> ProjectConfig:
        cfg = self.projects.get(project_id)
        if cfg is None:
            raise PreconditionViolation(f"unknown project {project_id}")
        return cfg

    async def _balance(self, project_id: str) -> int:
        try:
            return await self.ledger.vault_balance(project_id)
        except Exception as e:
            raise ExternalServiceError(f"vault balance read failed for {project_id}: {e}") from e

    # ============================================================
    # FUNDING & RESERVE
    # ============================================================

    def compute_minimum_funding(self, box_price: int) -> int:
        return economics.minimum_vault_funding(box_price, self.policy.FUNDING_MULTIPLE)

    def compute_withdrawal_reserve(self, project_id: str, unsettled_count: Optional[int] = None) -> int:
        """
        With an explicit count, the reserve for that many unrevealed boxes.
        Otherwise the reserve for the project's current unsettled boxes.
        """
        cfg = self._project(project_id)
        multiplier = economics.project_reserve_multiplier(cfg)
        if unsettled_count is not None:
            return economics.unopened_box_reserve(cfg.box_price, unsettled_count, multiplier)
        owed = self.store.outstanding(project_id)
        return economics.withdrawal_reserve(
            cfg.box_price, multiplier, owed.unrevealed,
            refund_eligible_count=owed.refund_eligible,
            revealed_rewards=owed.revealed_rewards,
        )

    async def check_funding(self, project_id: str) -> dict:
        """Is the vault at or above its minimum funding?"""
        cfg = self._project(project_id)
        balance = await self._balance(project_id)
        minimum = self.compute_minimum_funding(cfg.box_price)
        return {
            "project_id": project_id,
            "vault_balance": balance,
            "minimum_funding": minimum,
            "funded": balance >= minimum,
        }

    # ============================================================
    # WITHDRAWAL
    # ============================================================

    async def evaluate(self, project_id: str, amount: int) -> WithdrawalDecision:
        cfg = self._project(project_id)
        balance = await self._balance(project_id)
        owed = self.store.outstanding(project_id)
        return economics.evaluate_withdrawal(
            vault_balance=balance,
            amount=amount,
            box_price=cfg.box_price,
            unopened_count=owed.unrevealed,
            reserve_multiplier=economics.project_reserve_multiplier(cfg),
            refund_eligible_count=owed.refund_eligible,
            revealed_rewards=owed.revealed_rewards,
        )

    async def withdraw(self, project_id: str, amount: int, recipient: str) -> dict:
        decision = await self.evaluate(project_id, amount)
        if not decision.approved:
            logger.warning(f"WITHDRAWAL DENIED: project {project_id} amount={amount} - {decision.reason}")
            if amount <= 0:
                raise PreconditionViolation(decision.reason)
            raise InsufficientVaultBalance(
                decision.reason, required=amount, available=decision.max_withdrawable,
            )

        result = await self.ledger.submit(WithdrawFromVault(
            project_id=project_id, amount=amount, recipient=recipient,
        ))
        if not result.success:
            raise LedgerRejected(result.error or "withdrawal rejected", tx_hash=result.tx_hash)

        # the withdrawal is final; a failed balance read only loses the figure
        try:
            new_balance = await self._balance(project_id)
        except ExternalServiceError as e:
            logger.warning(f"Withdrawal {result.tx_hash} confirmed but balance read failed: {e}")
            new_balance = None
        logger.info(
            f"WITHDRAWAL: project {project_id} amount={amount} -> {recipient[:10]}... | "
            f"reserve={decision.reserve} | vault={new_balance}"
        )
        return {
            "withdrawn": amount,
            "tx_hash": result.tx_hash,
            "new_balance": new_balance,
            "decision": decision.to_dict(),
        }

    # ============================================================
    # STATUS
    # ============================================================

    async def metrics(self, project_id: str) -> dict:
        cfg = self._project(project_id)
        balance = await self._balance(project_id)
        unsettled = self.store.count_unsettled(project_id)
        reserve = self.compute_withdrawal_reserve(project_id)
        return {
            "project_id": project_id,
            "box_price": cfg.box_price,
            "vault_balance": balance,
            "minimum_funding": self.compute_minimum_funding(cfg.box_price),
            "unsettled_boxes": unsettled,
            "reserve": reserve,
            "max_withdrawable": max(0, balance - reserve),
            "reserve_multiplier": float(economics.project_reserve_multiplier(cfg)),
            "commission_per_box": economics.commission_amount(cfg.box_price, cfg.commission_bps),
            "tiers": economics.tier_metrics(cfg),
        }
