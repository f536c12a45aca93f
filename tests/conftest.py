import dataclasses

import pytest

from fatebox.box import Box
from fatebox.config import POLICY, ProjectConfig
from fatebox.engine import build_engine
from fatebox.errors import OracleNotReady
from fatebox.ledger import (
    CommitRandomness, CreatePayoutAccount, LedgerClient, LedgerTxResult, RefundBox,
    RevealAndRecord, SettleAndTransfer, WithdrawFromVault,
)
from fatebox.oracle import RandomnessOracle
from fatebox.store import JsonBoxStore

OWNER = "0x1111111111111111111111111111111111111111"
STRANGER = "0x2222222222222222222222222222222222222222"
T0 = 1_700_000_000.0


class FakeClock:
    def __init__(self, now: float = T0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeLedger(LedgerClient):
    """In-memory ledger that enforces the same one-way flags a contract would."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.boxes: dict[str, dict] = {}
        self.token_balances: dict[tuple, int] = {}
        self.vaults: dict[str, int] = {}
        self.payout_accounts: set[tuple] = set()
        self.first_activity: dict[str, float] = {}
        self.submitted: list = []
        self.reject_next: str = ""
        self.fail_reads: set = set()

    def mint(self, box_id: str, owner: str = OWNER, created_at: float = T0, balance: int = 1):
        self.boxes[box_id] = {
            "owner": owner,
            "created_at": created_at,
            "committed_at": 0.0,
            "luck": 0,
            "randomness_handle": "",
            "revealed": False,
            "settled": False,
            "reward_amount": 0,
            "reward_tier": None,
            "is_jackpot": False,
            "random_percentage": None,
            "honorary_choice": False,
            "refunded_at": 0.0,
        }
        self.token_balances[(owner, box_id)] = balance

    def _ok(self, box_id: str = None) -> LedgerTxResult:
        emitted = dict(self.boxes[box_id]) if box_id else {}
        return LedgerTxResult(success=True, tx_hash=f"0xtx{len(self.submitted)}",
                              emitted_state=emitted)

    def _fail(self, error: str) -> LedgerTxResult:
        return LedgerTxResult(success=False, error=error)

    async def submit(self, instruction) -> LedgerTxResult:
        self.submitted.append(instruction)
        if self.reject_next:
            error, self.reject_next = self.reject_next, ""
            return self._fail(error)

        if isinstance(instruction, CommitRandomness):
            box = self.boxes[instruction.box_id]
            if box["committed_at"]:
                return self._fail("already committed")
            box.update(committed_at=self.clock(), luck=instruction.luck,
                       randomness_handle=instruction.round_handle)
            return self._ok(instruction.box_id)

        if isinstance(instruction, RevealAndRecord):
            box = self.boxes[instruction.box_id]
            if box["revealed"] or not box["committed_at"]:
                return self._fail("cannot reveal")
            box.update(revealed=True, random_percentage=instruction.random_percentage,
                       reward_amount=instruction.reward_amount,
                       reward_tier=instruction.reward_tier, is_jackpot=instruction.is_jackpot)
            return self._ok(instruction.box_id)

        if isinstance(instruction, CreatePayoutAccount):
            self.payout_accounts.add((instruction.project_id, instruction.owner))
            return self._ok()

        if isinstance(instruction, SettleAndTransfer):
            box = self.boxes[instruction.box_id]
            if box["settled"] or not box["revealed"]:
                return self._fail("cannot settle")
            if self.vaults.get(instruction.project_id, 0) < instruction.amount:
                return self._fail("vault underfunded")
            self.vaults[instruction.project_id] -= instruction.amount
            box.update(settled=True, honorary_choice=instruction.choose_honorary)
            return self._ok(instruction.box_id)

        if isinstance(instruction, RefundBox):
            box = self.boxes[instruction.box_id]
            if box["refunded_at"] or box["revealed"]:
                return self._fail("cannot refund")
            self.vaults[instruction.project_id] -= instruction.amount
            box["refunded_at"] = self.clock()
            return self._ok(instruction.box_id)

        if isinstance(instruction, WithdrawFromVault):
            self.vaults[instruction.project_id] -= instruction.amount
            return self._ok()

        return self._fail(f"unknown instruction {instruction!r}")

    async def read_box(self, box_id: str):
        if box_id in self.fail_reads:
            raise ConnectionError(f"rpc timeout reading {box_id}")
        box = self.boxes.get(box_id)
        return dict(box) if box else None

    async def box_token_balance(self, owner: str, box_id: str) -> int:
        return self.token_balances.get((owner, box_id), 0)

    async def vault_balance(self, project_id: str) -> int:
        return self.vaults.get(project_id, 0)

    async def payout_account_exists(self, project_id: str, owner: str) -> bool:
        return (project_id, owner) in self.payout_accounts

    async def first_activity_time(self, box_id: str):
        return self.first_activity.get(box_id)

    def count(self, kind) -> int:
        return sum(1 for i in self.submitted if isinstance(i, kind))


class FakeOracle(RandomnessOracle):

    def __init__(self):
        self.rounds = 0
        self.values: dict[str, bytes] = {}
        self.default_value = (0).to_bytes(4, "little") + b"\x00" * 28
        self.not_ready_times = 0
        self.reveal_calls = 0
        self.fail_create: Exception = None

    async def create_round(self, queue_ref: str) -> str:
        if self.fail_create is not None:
            raise self.fail_create
        self.rounds += 1
        return f"round-{self.rounds}"

    async def reveal(self, round_handle: str) -> bytes:
        self.reveal_calls += 1
        if self.not_ready_times > 0:
            self.not_ready_times -= 1
            raise OracleNotReady(f"round {round_handle} not ready")
        return self.values.get(round_handle, self.default_value)


def roll_bytes(roll: float) -> bytes:
    """Oracle bytes that decode to (approximately) the given roll."""
    value = round(roll / 100.0 * 0xFFFFFFFF)
    return value.to_bytes(4, "little") + b"\x00" * 28


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ledger(clock):
    return FakeLedger(clock)


@pytest.fixture
def oracle():
    return FakeOracle()


@pytest.fixture
def store(tmp_path):
    return JsonBoxStore(tmp_path)


@pytest.fixture
def project():
    # +1 luck every 3 seconds, so a 165s hold reaches max luck
    return ProjectConfig(project_id="demo", box_price=1_000_000, luck_interval_seconds=3)


@pytest.fixture
def policy():
    return dataclasses.replace(POLICY, CHUNK_DELAY_SECONDS=0.0)


@pytest.fixture
def engine(ledger, oracle, store, project, policy, clock):
    return build_engine(ledger, oracle, store, {project.project_id: project},
                        policy=policy, clock=clock, oracle_retry_delay=0)


@pytest.fixture
def new_box(ledger, store):
    """Mint a box on the fake ledger and track it in the store."""
    def _make(box_id: str = "box-1", owner: str = OWNER, created_at: float = T0,
              project_id: str = "demo") -> Box:
        ledger.mint(box_id, owner=owner, created_at=created_at)
        box = Box(box_id=box_id, project_id=project_id, owner=owner, created_at=created_at)
        store.put(box)
        return box
    return _make
