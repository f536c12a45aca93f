"""
Ledger Client - On-Chain Transaction Layer

The ledger is the sole arbiter of "did this transaction happen". The engine
talks to it through LedgerClient: submit one instruction, get back a
LedgerTxResult; read box / vault / ownership state.

Web3Ledger implements it against the BoxVault contract on an EVM chain:
- Sync Web3 calls wrapped in run_in_executor() (web3.py async is fragile)
- Embedded minimal ABI, only the functions we call
- Gas estimation + 20% buffer, nonce from chain
- Receipt status checked; nothing is assumed confirmed without it
"""

import os
import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional, Union

logger = logging.getLogger("fatebox.ledger")


# ============================================================
# INSTRUCTIONS
# ============================================================

@dataclass(frozen=True)
class CommitRandomness:
    box_id: str
    owner: str
    round_handle: str
    luck: int


@dataclass(frozen=True)
class RevealAndRecord:
    box_id: str
    owner: str
    random_percentage: float
    reward_amount: int
    reward_tier: int
    is_jackpot: bool


@dataclass(frozen=True)
class CreatePayoutAccount:
    project_id: str
    owner: str


@dataclass(frozen=True)
class SettleAndTransfer:
    box_id: str
    project_id: str
    owner: str
    amount: int
    choose_honorary: bool = False


@dataclass(frozen=True)
class RefundBox:
    box_id: str
    project_id: str
    owner: str
    amount: int


@dataclass(frozen=True)
class WithdrawFromVault:
    project_id: str
    amount: int
    recipient: str


Instruction = Union[
    CommitRandomness, RevealAndRecord, CreatePayoutAccount,
    SettleAndTransfer, RefundBox, WithdrawFromVault,
]


# ============================================================
# RESULT TYPE
# ============================================================

@dataclass
class LedgerTxResult:
    """Result of a ledger submission attempt."""
    success: bool
    tx_hash: str = ""
    error: str = ""
    emitted_state: dict = field(default_factory=dict)
    gas_used: int = 0


# ============================================================
# INTERFACE
# ============================================================

class LedgerClient(ABC):
    """What the settlement engine needs from the ledger."""

    @abstractmethod
    async def submit(self, instruction: Instruction) -> LedgerTxResult:
        """Execute one instruction. Success only once confirmed."""

    @abstractmethod
    async def read_box(self, box_id: str) -> Optional[dict]:
        """Box account state, or None if the box does not exist on-ledger."""

    @abstractmethod
    async def box_token_balance(self, owner: str, box_id: str) -> int:
        """How many units of the box token `owner` currently holds (0 or 1)."""

    @abstractmethod
    async def vault_balance(self, project_id: str) -> int:
        """Vault balance in smallest token units."""

    @abstractmethod
    async def payout_account_exists(self, project_id: str, owner: str) -> bool:
        ...

    @abstractmethod
    async def first_activity_time(self, box_id: str) -> Optional[float]:
        """Unix time of the earliest ledger activity for the box (its mint)."""


# ============================================================
# MINIMAL ABI: only functions we call at runtime
# ============================================================

_BOX_TUPLE = [
    {"name": "owner", "type": "address"},
    {"name": "projectId", "type": "bytes32"},
    {"name": "createdAt", "type": "uint64"},
    {"name": "committedAt", "type": "uint64"},
    {"name": "luck", "type": "uint8"},
    {"name": "randomnessHandle", "type": "bytes32"},
    {"name": "revealed", "type": "bool"},
    {"name": "settled", "type": "bool"},
    {"name": "rewardAmount", "type": "uint256"},
    {"name": "rewardTier", "type": "uint8"},
    {"name": "isJackpot", "type": "bool"},
    {"name": "randomPercentageE6", "type": "uint32"},
    {"name": "honoraryChoice", "type": "bool"},
    {"name": "refundedAt", "type": "uint64"},
]

BOX_VAULT_ABI = [
    {
        "inputs": [{"name": "boxId", "type": "bytes32"}],
        "name": "getBox",
        "outputs": [{"components": _BOX_TUPLE, "name": "", "type": "tuple"}],
        "stateMutability": "view",
        "type": "function",
    },
    # ERC-1155 style box token balance
    {
        "inputs": [
            {"name": "account", "type": "address"},
            {"name": "id", "type": "uint256"},
        ],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"name": "projectId", "type": "bytes32"}],
        "name": "vaultBalance",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "projectId", "type": "bytes32"},
            {"name": "owner", "type": "address"},
        ],
        "name": "hasPayoutAccount",
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "boxId", "type": "bytes32"},
            {"name": "randomnessHandle", "type": "bytes32"},
            {"name": "luck", "type": "uint8"},
        ],
        "name": "commitBox",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "boxId", "type": "bytes32"},
            {"name": "randomPercentageE6", "type": "uint32"},
            {"name": "rewardAmount", "type": "uint256"},
            {"name": "rewardTier", "type": "uint8"},
            {"name": "isJackpot", "type": "bool"},
        ],
        "name": "revealBox",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "projectId", "type": "bytes32"},
            {"name": "owner", "type": "address"},
        ],
        "name": "openPayoutAccount",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "boxId", "type": "bytes32"},
            {"name": "chooseHonorary", "type": "bool"},
        ],
        "name": "settleBox",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [{"name": "boxId", "type": "bytes32"}],
        "name": "refundBox",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "projectId", "type": "bytes32"},
            {"name": "amount", "type": "uint256"},
            {"name": "to", "type": "address"},
        ],
        "name": "withdraw",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "boxId", "type": "bytes32"},
            {"indexed": True, "name": "owner", "type": "address"},
            {"indexed": False, "name": "projectId", "type": "bytes32"},
        ],
        "name": "BoxCreated",
        "type": "event",
    },
]

PERCENT_SCALE = 1_000_000   # randomPercentageE6: percentage * 1e6 fits a uint32


def box_state_from_tuple(raw) -> Optional[dict]:
    """Contract Box tuple -> engine dict. Zero owner means 'no such box'."""
    (owner, project_id, created_at, committed_at, luck, handle, revealed, settled,
     reward_amount, reward_tier, is_jackpot, pct_e6, honorary, refunded_at) = raw
    if int(owner, 16) == 0:
        return None
    return {
        "owner": owner,
        "project_key": "0x" + bytes(project_id).hex(),
        "created_at": float(created_at),
        "committed_at": float(committed_at),
        "luck": int(luck),
        "randomness_handle": "0x" + bytes(handle).hex() if committed_at else "",
        "revealed": bool(revealed),
        "settled": bool(settled),
        "reward_amount": int(reward_amount),
        "reward_tier": int(reward_tier) if revealed else None,
        "is_jackpot": bool(is_jackpot),
        "random_percentage": pct_e6 / PERCENT_SCALE if revealed else None,
        "honorary_choice": bool(honorary),
        "refunded_at": float(refunded_at),
    }


# ============================================================
# WEB3 LEDGER
# ============================================================

class Web3Ledger(LedgerClient):
    """
    LedgerClient over a BoxVault contract.

    Usage:
        ledger = Web3Ledger()
        if ledger.initialize(operator_key, vault_address, rpc_url):
            result = await ledger.submit(CommitRandomness(...))
    """

    def __init__(self):
        self._initialized: bool = False
        self._operator_key: str = ""
        self._operator_address: str = ""
        self._w3 = None
        self._contract = None
        self._chain_id: int = 0
        self._last_error: str = ""
        self._tx_count: int = 0

    def initialize(self, operator_private_key: str, contract_address: str,
                   rpc_url: Optional[str] = None) -> bool:
        from web3 import Web3
        from eth_account import Account

        if not operator_private_key:
            logger.warning("No OPERATOR_PRIVATE_KEY — ledger disabled")
            return False
        if not contract_address:
            logger.warning("No BOX_VAULT_ADDRESS — ledger disabled")
            return False

        try:
            account = Account.from_key(operator_private_key)
        except Exception as e:
            logger.error(f"Invalid OPERATOR_PRIVATE_KEY: {e}")
            return False

        rpc_url = rpc_url or os.getenv("RPC_URL", "http://127.0.0.1:8545")
        w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": 30}))
        if not w3.is_connected():
            logger.warning(f"Cannot connect to ledger RPC ({rpc_url})")
            return False

        self._w3 = w3
        self._operator_key = operator_private_key
        self._operator_address = account.address
        self._contract = w3.eth.contract(
            address=Web3.to_checksum_address(contract_address), abi=BOX_VAULT_ABI,
        )
        self._chain_id = w3.eth.chain_id
        self._initialized = True
        logger.info(
            f"Ledger connected: chain={self._chain_id} | "
            f"vault={contract_address[:10]}... | operator={self._operator_address[:10]}..."
        )
        return True

    # ------------------------------------------------------------
    # encoding helpers
    # ------------------------------------------------------------

    def _key(self, ref: str) -> bytes:
        """32-byte key for an opaque box / project reference."""
        from web3 import Web3
        if ref.startswith("0x") and len(ref) == 66:
            return bytes.fromhex(ref[2:])
        return bytes(Web3.keccak(text=ref))

    def _address(self, addr: str) -> str:
        from web3 import Web3
        return Web3.to_checksum_address(addr)

    async def _call(self, fn):
        return await asyncio.get_running_loop().run_in_executor(None, fn)

    def _build_call(self, instruction: Instruction):
        fns = self._contract.functions
        if isinstance(instruction, CommitRandomness):
            return fns.commitBox(self._key(instruction.box_id),
                                 self._key(instruction.round_handle), instruction.luck)
        if isinstance(instruction, RevealAndRecord):
            pct_e6 = int(round(instruction.random_percentage * PERCENT_SCALE))
            return fns.revealBox(self._key(instruction.box_id), pct_e6,
                                 instruction.reward_amount, instruction.reward_tier,
                                 instruction.is_jackpot)
        if isinstance(instruction, CreatePayoutAccount):
            return fns.openPayoutAccount(self._key(instruction.project_id),
                                         self._address(instruction.owner))
        if isinstance(instruction, SettleAndTransfer):
            return fns.settleBox(self._key(instruction.box_id), instruction.choose_honorary)
        if isinstance(instruction, RefundBox):
            return fns.refundBox(self._key(instruction.box_id))
        if isinstance(instruction, WithdrawFromVault):
            return fns.withdraw(self._key(instruction.project_id), instruction.amount,
                                self._address(instruction.recipient))
        raise TypeError(f"unsupported instruction: {type(instruction).__name__}")

    # ------------------------------------------------------------
    # LedgerClient
    # ------------------------------------------------------------

    async def submit(self, instruction: Instruction) -> LedgerTxResult:
        """
        Build, sign, send, and wait for the receipt. Handles gas + nonce.
        For box instructions the post-confirmation box state is returned as
        emitted_state.
        """
        name = type(instruction).__name__
        if not self._initialized:
            return LedgerTxResult(success=False, error="ledger not initialized")

        w3 = self._w3
        try:
            tx_fn = self._build_call(instruction)

            def _execute():
                nonce = w3.eth.get_transaction_count(self._operator_address)
                tx = tx_fn.build_transaction({
                    "from": self._operator_address,
                    "nonce": nonce,
                    "gasPrice": w3.eth.gas_price,
                    "chainId": self._chain_id,
                })

                # Gas estimation + 20% buffer
                try:
                    gas_estimate = w3.eth.estimate_gas(tx)
                    tx["gas"] = int(gas_estimate * 1.2)
                except Exception as gas_err:
                    logger.warning(f"Gas estimation failed for {name}, using default 300k: {gas_err}")
                    tx["gas"] = 300_000

                signed = w3.eth.account.sign_transaction(tx, self._operator_key)
                tx_hash = w3.eth.send_raw_transaction(signed.raw_transaction)
                receipt = w3.eth.wait_for_transaction_receipt(tx_hash, timeout=120)
                return receipt, tx_hash.hex()

            receipt, tx_hash_hex = await self._call(_execute)

            if receipt["status"] != 1:
                error = f"TX reverted: {tx_hash_hex}"
                logger.warning(f"TX FAILED [{name}]: {error}")
                self._last_error = error
                return LedgerTxResult(success=False, tx_hash=tx_hash_hex, error=error)

            self._tx_count += 1
            gas_used = receipt.get("gasUsed", 0)
            logger.info(f"TX SUCCESS [{name}]: {tx_hash_hex[:16]}... | gas={gas_used}")

            emitted = {}
            box_id = getattr(instruction, "box_id", None)
            if box_id:
                emitted = await self.read_box(box_id) or {}
            return LedgerTxResult(success=True, tx_hash=tx_hash_hex,
                                  emitted_state=emitted, gas_used=gas_used)

        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            logger.warning(f"TX ERROR [{name}]: {error}")
            self._last_error = error
            return LedgerTxResult(success=False, error=error)

    async def read_box(self, box_id: str) -> Optional[dict]:
        raw = await self._call(self._contract.functions.getBox(self._key(box_id)).call)
        return box_state_from_tuple(raw)

    async def box_token_balance(self, owner: str, box_id: str) -> int:
        token_id = int.from_bytes(self._key(box_id), "big")
        fn = self._contract.functions.balanceOf(self._address(owner), token_id)
        return int(await self._call(fn.call))

    async def vault_balance(self, project_id: str) -> int:
        fn = self._contract.functions.vaultBalance(self._key(project_id))
        return int(await self._call(fn.call))

    async def payout_account_exists(self, project_id: str, owner: str) -> bool:
        fn = self._contract.functions.hasPayoutAccount(
            self._key(project_id), self._address(owner),
        )
        return bool(await self._call(fn.call))

    async def first_activity_time(self, box_id: str) -> Optional[float]:
        key = self._key(box_id)

        def _lookup():
            logs = self._contract.events.BoxCreated.get_logs(
                from_block=0, argument_filters={"boxId": key},
            )
            if not logs:
                return None
            block = self._w3.eth.get_block(logs[0]["blockNumber"])
            return float(block["timestamp"])

        return await self._call(_lookup)

    def get_status(self) -> dict:
        return {
            "initialized": self._initialized,
            "operator": self._operator_address[:10] + "..." if self._operator_address else "",
            "chain_id": self._chain_id,
            "tx_count": self._tx_count,
            "last_error": self._last_error,
        }
