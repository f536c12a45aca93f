import asyncio

import pytest

from conftest import OWNER, STRANGER, T0, roll_bytes
from fatebox.errors import InsufficientVaultBalance, PreconditionViolation
from fatebox.ledger import CreatePayoutAccount, RefundBox, SettleAndTransfer


@pytest.fixture
def revealed_box(engine, oracle, new_box):
    """Commit + reveal box-1 at max luck with the given roll."""
    async def _make(roll: float):
        new_box(created_at=T0 - 165)
        await engine.orchestrator.commit_box("box-1")
        oracle.values["round-1"] = roll_bytes(roll)
        return await engine.orchestrator.reveal_box("box-1")
    return _make


@pytest.mark.asyncio
async def test_settle_transfers_reward(engine, ledger, store, revealed_box):
    ledger.vaults["demo"] = 30_000_000
    outcome = await revealed_box(90)               # tier3 profit: 1.5x
    assert outcome.tier == "profit"

    result = await engine.settlement.settle_box("box-1", caller=OWNER)

    assert result.transferred == 1_500_000
    assert result.new_balance == 28_500_000
    assert store.get("box-1").settled
    assert ledger.count(CreatePayoutAccount) == 1
    assert ledger.count(SettleAndTransfer) == 1


@pytest.mark.asyncio
async def test_settle_twice_never_double_pays(engine, ledger, revealed_box):
    ledger.vaults["demo"] = 30_000_000
    await revealed_box(90)
    await engine.settlement.settle_box("box-1")
    again = await engine.settlement.settle_box("box-1")

    assert again.already_settled
    assert again.transferred == 0
    assert ledger.vaults["demo"] == 28_500_000
    assert ledger.count(SettleAndTransfer) == 1


@pytest.mark.asyncio
async def test_existing_payout_account_is_reused(engine, ledger, revealed_box):
    ledger.vaults["demo"] = 30_000_000
    ledger.payout_accounts.add(("demo", OWNER))
    await revealed_box(90)
    await engine.settlement.settle_box("box-1")
    assert ledger.count(CreatePayoutAccount) == 0


@pytest.mark.asyncio
async def test_insufficient_vault_is_a_solvency_failure(engine, ledger, store, revealed_box, caplog):
    ledger.vaults["demo"] = 1_000_000
    await revealed_box(90)

    with pytest.raises(InsufficientVaultBalance) as exc:
        await engine.settlement.settle_box("box-1")

    assert exc.value.required == 1_500_000
    assert exc.value.available == 1_000_000
    assert ledger.count(SettleAndTransfer) == 0
    assert not store.get("box-1").settled
    assert any(r.levelname == "CRITICAL" for r in caplog.records)


@pytest.mark.asyncio
async def test_honorary_jackpot_transfers_nothing(engine, ledger, store, revealed_box):
    ledger.vaults["demo"] = 0
    outcome = await revealed_box(99.5)
    assert outcome.is_jackpot

    result = await engine.settlement.settle_box("box-1", choose_honorary=True)

    assert result.transferred == 0
    assert result.honorary_choice
    box = store.get("box-1")
    assert box.settled and box.honorary_choice


@pytest.mark.asyncio
async def test_honorary_requires_jackpot(engine, ledger, revealed_box):
    ledger.vaults["demo"] = 30_000_000
    await revealed_box(10)
    with pytest.raises(PreconditionViolation):
        await engine.settlement.settle_box("box-1", choose_honorary=True)
    assert ledger.count(SettleAndTransfer) == 0


@pytest.mark.asyncio
async def test_settle_requires_reveal(engine, ledger, new_box):
    new_box()
    await engine.orchestrator.commit_box("box-1")
    with pytest.raises(PreconditionViolation):
        await engine.settlement.settle_box("box-1")


@pytest.mark.asyncio
async def test_settle_rejects_other_caller(engine, ledger, revealed_box):
    ledger.vaults["demo"] = 30_000_000
    await revealed_box(90)
    with pytest.raises(PreconditionViolation):
        await engine.settlement.settle_box("box-1", caller=STRANGER)


@pytest.mark.asyncio
async def test_refund_after_expiry(engine, ledger, store, clock, new_box):
    ledger.vaults["demo"] = 30_000_000
    new_box()
    await engine.orchestrator.commit_box("box-1")
    clock.advance(3601)
    await engine.watchdog.run_once()

    result = await engine.settlement.refund_box("box-1")

    assert result.refunded == 1_000_000
    assert ledger.vaults["demo"] == 29_000_000
    box = store.get("box-1")
    assert box.refunded_at == clock.now
    assert box.phase.value == "refunded"

    again = await engine.settlement.refund_box("box-1")
    assert again.already_refunded
    assert ledger.count(RefundBox) == 1


@pytest.mark.asyncio
async def test_refund_requires_eligibility(engine, ledger, new_box):
    ledger.vaults["demo"] = 30_000_000
    new_box()
    await engine.orchestrator.commit_box("box-1")
    with pytest.raises(PreconditionViolation):
        await engine.settlement.refund_box("box-1")
    assert ledger.count(RefundBox) == 0


@pytest.mark.asyncio
async def test_concurrent_settles_transfer_once(engine, ledger, revealed_box):
    ledger.vaults["demo"] = 30_000_000
    await revealed_box(90)

    first, second = await asyncio.gather(
        engine.settlement.settle_box("box-1"),
        engine.settlement.settle_box("box-1"),
    )

    assert sorted([first.transferred, second.transferred]) == [0, 1_500_000]
    assert first.already_settled != second.already_settled
    assert ledger.count(SettleAndTransfer) == 1
    assert ledger.vaults["demo"] == 28_500_000


@pytest.mark.asyncio
async def test_settle_succeeds_when_balance_reread_fails(engine, ledger, store, revealed_box):
    ledger.vaults["demo"] = 30_000_000
    await revealed_box(90)
    reads = 0
    balance = ledger.vault_balance

    async def flaky_balance(project_id):
        nonlocal reads
        reads += 1
        if reads > 1:
            raise ConnectionError("rpc blip")
        return await balance(project_id)

    ledger.vault_balance = flaky_balance

    result = await engine.settlement.settle_box("box-1")

    assert result.transferred == 1_500_000
    assert result.new_balance is None
    assert store.get("box-1").settled
    assert ledger.vaults["demo"] == 28_500_000
