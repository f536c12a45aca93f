import pytest

from conftest import T0
from fatebox.config import ProjectConfig
from fatebox.errors import RevealWindowExpired
from fatebox.watchdog import REVEAL_WINDOW_EXPIRED, RefundWatchdog


@pytest.mark.asyncio
async def test_marks_only_expired_commits(engine, store, clock, new_box):
    new_box("box-1")
    new_box("box-2")
    await engine.orchestrator.commit_box("box-1")
    clock.advance(1000)
    await engine.orchestrator.commit_box("box-2")
    clock.advance(2700)                       # box-1: 3700s, box-2: 2700s

    report = await engine.watchdog.run_once()

    assert report.marked == ["box-1"]
    assert report.errors == {}
    expired = store.get("box-1")
    assert expired.refund_eligible
    assert expired.reveal_failure_reason == REVEAL_WINDOW_EXPIRED
    assert not store.get("box-2").refund_eligible


@pytest.mark.asyncio
async def test_dry_run_changes_nothing(engine, store, clock, new_box):
    new_box()
    await engine.orchestrator.commit_box("box-1")
    clock.advance(4000)

    report = await engine.watchdog.run_once(dry_run=True)

    assert report.dry_run
    assert report.marked == ["box-1"]
    assert not store.get("box-1").refund_eligible


@pytest.mark.asyncio
async def test_project_filter(engine, clock, new_box):
    new_box()
    await engine.orchestrator.commit_box("box-1")
    clock.advance(4000)

    report = await engine.watchdog.run_once(project_id="another-project")
    assert report.checked == 0
    assert report.marked == []


@pytest.mark.asyncio
async def test_reveal_seen_on_ledger_is_not_marked(engine, ledger, store, clock, new_box):
    new_box()
    await engine.orchestrator.commit_box("box-1")
    clock.advance(4000)
    ledger.boxes["box-1"]["revealed"] = True   # landed after the store was last written

    report = await engine.watchdog.run_once()

    assert report.marked == []
    assert "box-1" in report.skipped
    assert not store.get("box-1").refund_eligible


@pytest.mark.asyncio
async def test_marked_box_can_no_longer_reveal(engine, clock, new_box):
    new_box()
    await engine.orchestrator.commit_box("box-1")
    clock.advance(4000)
    await engine.watchdog.run_once()

    with pytest.raises(RevealWindowExpired):
        await engine.orchestrator.reveal_box("box-1")


@pytest.mark.asyncio
async def test_second_pass_is_a_no_op(engine, clock, new_box):
    new_box()
    await engine.orchestrator.commit_box("box-1")
    clock.advance(4000)
    await engine.watchdog.run_once()

    report = await engine.watchdog.run_once()
    assert report.checked == 0


@pytest.mark.asyncio
async def test_unconfigured_project_uses_default_window(engine, ledger, store, clock, policy, new_box):
    slow = ProjectConfig(project_id="slow", box_price=1_000_000, reveal_window_seconds=7200)
    watchdog = RefundWatchdog(engine.state, {"slow": slow}, policy=policy, clock=clock)
    box = new_box(project_id="legacy")
    box.committed_at = T0
    store.put(box)
    ledger.boxes["box-1"]["committed_at"] = T0
    clock.advance(4000)                       # past the 3600s default, inside 7200s

    report = await watchdog.run_once()

    assert report.marked == ["box-1"]
    assert store.get("box-1").refund_eligible
