"""End-to-end runs through scanner and executor against each local backend."""

import asyncio
from datetime import timedelta

import pytest

from conftest import T0, WS, FakeClock, lead_score_automation, make_contact, signup_automation
from flowmail.config import FlowmailConfig
from flowmail.engine import AutomationEngine
from flowmail.mailers import InMemoryMailer
from flowmail.persistence import (
    AutomationRecord,
    ContactEvent,
    InMemoryEngineRepository,
    QueueStatus,
    RunStatus,
    SQLiteEngineRepository,
)


@pytest.fixture(params=["inmemory", "sqlite"])
def backend(request, tmp_path):
    if request.param == "sqlite":
        repo = SQLiteEngineRepository(tmp_path / "flowmail.db")
        yield repo
        repo.close()
    else:
        yield InMemoryEngineRepository()


@pytest.fixture
def env(backend):
    clock = FakeClock()
    mailer = InMemoryMailer()
    engine = AutomationEngine(backend, mailer, config=FlowmailConfig(), clock=clock)
    return engine, backend, mailer, clock


@pytest.mark.asyncio
async def test_form_submit_sends_email_and_completes(env):
    engine, repo, mailer, clock = env
    await repo.save_automation(signup_automation("A1"))
    await repo.save_contact(make_contact("C1"))
    await repo.append_event(
        ContactEvent(
            workspace_id=WS,
            contact_id="C1",
            type="form_submitted",
            occurred_at=T0 - timedelta(minutes=1),
            meta={"form": "Signup"},
        )
    )

    scan = await engine.scan(WS, 50)
    assert scan.matched == 1

    [run] = await repo.list_runs(WS)
    assert run.status == RunStatus.RUNNING
    assert run.current_step_id == "s1"
    [item] = await repo.list_queue(WS, run.id)
    assert item.step_id == "s1"
    assert item.status == QueueStatus.QUEUED

    processed = await engine.process(WS, 10)
    assert processed.processed == 1

    run = await repo.get_run(WS, run.id)
    assert run.status == RunStatus.COMPLETED
    assert run.finished_at == T0
    assert [m.to_email for m in mailer.sent] == ["C1@example.com"]
    assert mailer.sent[0].subject == "Welcome Ada"


@pytest.mark.asyncio
async def test_lead_score_condition_picks_branch(env):
    engine, repo, mailer, clock = env
    await repo.save_automation(lead_score_automation("A2"))
    await repo.save_contact(make_contact("hot", lead_score=80))
    await repo.save_contact(make_contact("cold", lead_score=20))
    for minute, contact_id in enumerate(["hot", "cold"]):
        await repo.append_event(
            ContactEvent(
                workspace_id=WS,
                contact_id=contact_id,
                type="email_open",
                occurred_at=T0 - timedelta(minutes=10 - minute),
            )
        )

    await engine.scan(WS, 50)
    await engine.process(WS, 10)  # condition
    await engine.process(WS, 10)  # branch action

    subjects = {m.contact_id: m.subject for m in mailer.sent}
    assert subjects == {"hot": "Book a call", "cold": "Learn more"}
    assert {r.status for r in await repo.list_runs(WS)} == {RunStatus.COMPLETED}


@pytest.mark.asyncio
async def test_wait_step_delays_next_item(env):
    engine, repo, mailer, clock = env
    await repo.save_automation(
        AutomationRecord(
            workspace_id=WS,
            id="A3",
            steps=[
                {"id": "w1", "type": "wait", "config": {"days": 1, "next": "s1"}},
                {"id": "s1", "type": "action", "config": {"kind": "action.send_email"}},
            ],
        )
    )
    await repo.save_contact(make_contact())
    trigger = await engine.trigger(WS, "A3", "c1")
    assert trigger.step_id == "w1"

    await engine.process(WS, 10)
    pending = [i for i in await repo.list_queue(WS, trigger.run_id) if i.step_id == "s1"]
    assert [i.execute_at for i in pending] == [T0 + timedelta(hours=24)]

    clock.advance(hours=1)
    assert (await engine.process(WS, 10)).processed == 0
    assert mailer.sent == []

    clock.now = T0 + timedelta(hours=25)
    assert (await engine.process(WS, 10)).processed == 1
    assert len(mailer.sent) == 1
    assert (await repo.get_run(WS, trigger.run_id)).status == RunStatus.COMPLETED


@pytest.mark.asyncio
async def test_wait_step_item_is_due_exactly_at_boundary(env):
    engine, repo, mailer, clock = env
    await repo.save_automation(
        AutomationRecord(
            workspace_id=WS,
            id="A3",
            steps=[
                {"id": "w1", "type": "wait", "config": {"days": 1, "next": "s1"}},
                {"id": "s1", "type": "action", "config": {"kind": "action.send_email"}},
            ],
        )
    )
    await repo.save_contact(make_contact())
    trigger = await engine.trigger(WS, "A3", "c1")
    await engine.process(WS, 10)

    clock.now = T0 + timedelta(days=1) - timedelta(microseconds=1)
    assert (await engine.process(WS, 10)).processed == 0

    clock.now = T0 + timedelta(days=1)
    assert (await engine.process(WS, 10)).processed == 1
    assert len(mailer.sent) == 1
    assert (await repo.get_run(WS, trigger.run_id)).status == RunStatus.COMPLETED


@pytest.mark.asyncio
async def test_concurrent_process_claims_item_once(env):
    engine, repo, mailer, clock = env
    await repo.save_automation(signup_automation("A1"))
    await repo.save_contact(make_contact())
    await engine.trigger(WS, "A1", "c1")

    first, second = await asyncio.gather(engine.process(WS, 10), engine.process(WS, 10))

    assert sorted([first.processed, second.processed]) == [0, 1]
    assert len(mailer.sent) == 1


@pytest.mark.asyncio
async def test_paused_automation_cancels_pending_run(env):
    engine, repo, mailer, clock = env
    await repo.save_automation(signup_automation("A1"))
    await repo.save_contact(make_contact("C1"))
    await repo.append_event(
        ContactEvent(
            workspace_id=WS,
            contact_id="C1",
            type="form_submitted",
            occurred_at=T0,
            meta={"form": "Signup"},
        )
    )
    await engine.scan(WS, 50)

    await repo.save_automation(signup_automation("A1", status="Paused"))
    result = await engine.process(WS, 10)

    assert result.cancelled == 1
    assert mailer.sent == []
    [run] = await repo.list_runs(WS)
    assert run.status == RunStatus.CANCELLED
    [item] = await repo.list_queue(WS, run.id)
    assert item.status == QueueStatus.DONE


@pytest.mark.asyncio
async def test_tick_visits_active_workspaces(env):
    engine, repo, mailer, clock = env
    await repo.save_automation(signup_automation("A1"))
    await repo.save_contact(make_contact("C1"))
    await repo.append_event(
        ContactEvent(
            workspace_id=WS,
            contact_id="C1",
            type="form_submitted",
            occurred_at=T0,
            meta={"form": "Signup"},
        )
    )

    result = await engine.tick()

    assert result.workspaces == 1
    [entry] = result.results
    assert entry["workspaceId"] == WS
    assert entry["scanner"]["matched"] == 1
    assert entry["worker"]["processed"] == 1
    assert len(mailer.sent) == 1
