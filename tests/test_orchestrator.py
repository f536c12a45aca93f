import asyncio

import pytest

from conftest import OWNER, STRANGER, T0, roll_bytes
from fatebox.errors import (
    BoxNotFound, ExternalServiceError, LedgerRejected, OracleNotReady,
    PreconditionViolation, RevealWindowExpired,
)
from fatebox.ledger import CommitRandomness, RevealAndRecord


@pytest.mark.asyncio
async def test_commit_records_luck_and_round(engine, ledger, store, new_box):
    new_box(created_at=T0 - 165)

    result = await engine.orchestrator.commit_box("box-1", caller=OWNER)

    assert result.committed and not result.already_committed
    assert result.luck == 60
    assert result.round_handle == "round-1"
    assert result.reveal_deadline == T0 + 3600
    box = store.get("box-1")
    assert box.committed_at == T0
    assert box.randomness_handle == "round-1"
    assert box.commit_tx
    assert ledger.count(CommitRandomness) == 1


@pytest.mark.asyncio
async def test_commit_is_idempotent(engine, ledger, oracle, new_box):
    new_box(created_at=T0 - 30)
    first = await engine.orchestrator.commit_box("box-1")
    second = await engine.orchestrator.commit_box("box-1")

    assert second.already_committed
    assert (second.luck, second.round_handle) == (first.luck, first.round_handle)
    assert oracle.rounds == 1
    assert ledger.count(CommitRandomness) == 1


@pytest.mark.asyncio
async def test_concurrent_commits_submit_once(engine, ledger, new_box):
    new_box()
    results = await asyncio.gather(
        engine.orchestrator.commit_box("box-1"),
        engine.orchestrator.commit_box("box-1"),
    )
    assert sorted(r.already_committed for r in results) == [False, True]
    assert ledger.count(CommitRandomness) == 1


@pytest.mark.asyncio
async def test_commit_requires_token_holder(engine, ledger, store, new_box):
    new_box()
    ledger.token_balances[(OWNER, "box-1")] = 0

    with pytest.raises(PreconditionViolation):
        await engine.orchestrator.commit_box("box-1")
    assert ledger.submitted == []
    assert store.get("box-1").committed_at == 0


@pytest.mark.asyncio
async def test_commit_rejects_other_caller(engine, ledger, new_box):
    new_box()
    with pytest.raises(PreconditionViolation):
        await engine.orchestrator.commit_box("box-1", caller=STRANGER)
    assert ledger.submitted == []


@pytest.mark.asyncio
async def test_ledger_rejection_leaves_box_unopened(engine, ledger, store, new_box):
    new_box()
    ledger.reject_next = "simulated revert"

    with pytest.raises(LedgerRejected):
        await engine.orchestrator.commit_box("box-1")
    box = store.get("box-1")
    assert box.committed_at == 0
    assert box.randomness_handle == ""


@pytest.mark.asyncio
async def test_oracle_failure_on_commit(engine, ledger, oracle, new_box):
    new_box()
    oracle.fail_create = RuntimeError("queue unavailable")

    with pytest.raises(ExternalServiceError):
        await engine.orchestrator.commit_box("box-1")
    assert ledger.submitted == []


@pytest.mark.asyncio
async def test_unknown_box(engine):
    with pytest.raises(BoxNotFound):
        await engine.orchestrator.commit_box("nope")


@pytest.mark.asyncio
async def test_ledger_state_wins_over_store(engine, ledger, store, oracle, new_box):
    new_box()
    ledger.boxes["box-1"].update(committed_at=T0 - 10, luck=7, randomness_handle="0xabc")

    result = await engine.orchestrator.commit_box("box-1")

    assert result.already_committed
    assert result.luck == 7
    assert oracle.rounds == 0
    assert store.get("box-1").committed_at == T0 - 10


@pytest.mark.asyncio
async def test_reveal_resolves_and_records(engine, ledger, oracle, store, new_box):
    new_box(created_at=T0 - 165)
    await engine.orchestrator.commit_box("box-1")
    oracle.values["round-1"] = roll_bytes(99.5)

    result = await engine.orchestrator.reveal_box("box-1")

    assert result.tier == "jackpot"
    assert result.is_jackpot
    assert result.reward_amount == 4_000_000
    assert result.random_percentage == pytest.approx(99.5)
    box = store.get("box-1")
    assert box.revealed and box.is_jackpot
    assert box.reward_amount == 4_000_000
    assert ledger.count(RevealAndRecord) == 1


@pytest.mark.asyncio
async def test_reveal_uses_luck_fixed_at_commit(engine, oracle, clock, new_box):
    new_box(created_at=T0)                 # luck 5 at commit
    commit = await engine.orchestrator.commit_box("box-1")
    assert commit.luck == 5

    clock.advance(600)                     # holding longer no longer matters
    oracle.values["round-1"] = roll_bytes(80)
    result = await engine.orchestrator.reveal_box("box-1")

    # tier1: rebate <= 72 < breakeven <= 89
    assert result.tier == "breakeven"
    assert result.luck == 5


@pytest.mark.asyncio
async def test_reveal_is_idempotent(engine, ledger, oracle, new_box):
    new_box()
    await engine.orchestrator.commit_box("box-1")
    oracle.values["round-1"] = roll_bytes(50)
    first = await engine.orchestrator.reveal_box("box-1")
    second = await engine.orchestrator.reveal_box("box-1")

    assert second.already_revealed
    assert (second.tier, second.reward_amount) == (first.tier, first.reward_amount)
    assert oracle.reveal_calls == 1
    assert ledger.count(RevealAndRecord) == 1


@pytest.mark.asyncio
async def test_reveal_retries_once_when_not_ready(engine, oracle, new_box):
    new_box()
    await engine.orchestrator.commit_box("box-1")
    oracle.not_ready_times = 1

    result = await engine.orchestrator.reveal_box("box-1")

    assert result.tier
    assert oracle.reveal_calls == 2


@pytest.mark.asyncio
async def test_reveal_gives_up_after_one_retry(engine, oracle, store, new_box):
    new_box()
    await engine.orchestrator.commit_box("box-1")
    oracle.not_ready_times = 5

    with pytest.raises(OracleNotReady):
        await engine.orchestrator.reveal_box("box-1")
    assert oracle.reveal_calls == 2
    assert not store.get("box-1").revealed


@pytest.mark.asyncio
async def test_reveal_after_window_is_refused(engine, oracle, clock, store, new_box):
    new_box()
    await engine.orchestrator.commit_box("box-1")
    clock.advance(3601)

    with pytest.raises(RevealWindowExpired):
        await engine.orchestrator.reveal_box("box-1")
    assert oracle.reveal_calls == 0
    box = store.get("box-1")
    assert not box.revealed
    assert not box.refund_eligible


@pytest.mark.asyncio
async def test_reveal_requires_commit(engine, oracle, new_box):
    new_box()
    with pytest.raises(PreconditionViolation):
        await engine.orchestrator.reveal_box("box-1")
    assert oracle.reveal_calls == 0


@pytest.mark.asyncio
async def test_short_oracle_value_is_an_external_failure(engine, oracle, store, new_box):
    new_box()
    await engine.orchestrator.commit_box("box-1")
    oracle.values["round-1"] = b"\x01\x02"

    with pytest.raises(ExternalServiceError) as exc:
        await engine.orchestrator.reveal_box("box-1")

    assert exc.value.box_id == "box-1"
    assert not store.get("box-1").revealed


@pytest.mark.asyncio
async def test_box_locks_are_released(engine, new_box):
    for i in range(200):
        with pytest.raises(BoxNotFound):
            await engine.orchestrator.commit_box(f"missing-{i}")
    assert engine.state.active_locks == 0

    new_box()
    await asyncio.gather(
        engine.orchestrator.commit_box("box-1"),
        engine.orchestrator.commit_box("box-1"),
    )
    assert engine.state.active_locks == 0
