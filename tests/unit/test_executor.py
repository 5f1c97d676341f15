"""Step executor behaviour: dispatch, retries, terminal failures and cancellation."""

from datetime import timedelta

import pytest

from conftest import T0, WS, make_contact
from flowmail.constants import EVENT_EMAIL_QUEUED, EVENT_FIELD_UPDATED
from flowmail.engine import AutomationEngine
from flowmail.errors import ClaimLostError
from flowmail.mailers import InMemoryMailer
from flowmail.models import ProcessResult
from flowmail.persistence import (
    AutomationRecord,
    InMemoryEngineRepository,
    QueueStatus,
    RunStatus,
)


def _record(steps, automation_id="auto", status="Running"):
    return AutomationRecord(workspace_id=WS, id=automation_id, status=status, steps=steps)


def _action(step_id, kind, next_id=None, **config):
    config = {"kind": f"action.{kind}", **config}
    if next_id:
        config["next"] = next_id
    return {"id": step_id, "type": "action", "config": config}


async def _start(engine, repo, steps, contact=None, automation_id="auto"):
    await repo.save_automation(_record(steps, automation_id))
    await repo.save_contact(contact or make_contact())
    result = await engine.trigger(WS, automation_id, "c1")
    return result.run_id


class FailingMailer:
    def __init__(self, failures):
        self.failures = failures
        self.sent = []

    async def send(self, request):
        if self.failures > 0:
            self.failures -= 1
            raise ConnectionError("smtp gateway down")
        self.sent.append(request)


@pytest.mark.asyncio
async def test_send_email_renders_and_records_event(engine, repo, mailer):
    run_id = await _start(
        engine, repo, [_action("s1", "send_email", subject="Hi {{firstName}}", body="{{fullName}} <{{email}}>")]
    )

    result = await engine.process(WS)

    assert result.processed == 1
    assert result.completed == 1
    [sent] = mailer.sent
    assert sent.subject == "Hi Ada"
    assert sent.body == "Ada Lovelace <c1@example.com>"
    assert sent.run_id == run_id
    events = await repo.read_events(WS, None, 10)
    assert [e.type for e in events] == [EVENT_EMAIL_QUEUED]
    run = await repo.get_run(WS, run_id)
    assert run.status == RunStatus.COMPLETED
    assert run.steps_executed == 1


@pytest.mark.asyncio
async def test_send_email_without_address_still_advances(engine, repo, mailer):
    run_id = await _start(
        engine, repo, [_action("s1", "send_email")], contact=make_contact(email="")
    )
    await engine.process(WS)
    assert mailer.sent == []
    assert (await repo.get_run(WS, run_id)).status == RunStatus.COMPLETED


@pytest.mark.asyncio
async def test_update_field_changes_contact(engine, repo):
    steps = [
        _action("s1", "update_field", "s2", field="tag", op="add", value="vip"),
        _action("s2", "update_field", "s3", field="tag", op="remove", value="COLD"),
        _action("s3", "update_field", "s4", field="leadScore", value="75"),
        _action("s4", "update_field", None, field="lifecycleStage", value="customer"),
    ]
    await _start(engine, repo, steps, contact=make_contact(tags=["cold", "vip"]))

    for _ in range(4):
        await engine.process(WS)

    contact = await repo.get_contact(WS, "c1")
    assert contact.tags == ["vip"]
    assert contact.lead_score == 75
    assert contact.lifecycle_stage == "customer"
    events = await repo.read_events(WS, None, 10)
    assert [e.type for e in events] == [EVENT_FIELD_UPDATED] * 4


@pytest.mark.asyncio
async def test_notify_falls_back_to_team_address(engine, repo, mailer):
    await _start(engine, repo, [{"title": "Hot lead", **_action("n1", "notify")}])
    await engine.process(WS)
    [sent] = mailer.sent
    assert sent.kind == "notification"
    assert sent.to_email == "team@example.com"
    assert sent.subject == "Automation Alert: auto"
    assert sent.body == 'Contact c1@example.com reached step "Hot lead"'


@pytest.mark.asyncio
async def test_transient_failure_is_retried_with_backoff(repo, config, clock):
    mailer = FailingMailer(failures=1)
    engine = AutomationEngine(repo, mailer, config=config, clock=clock)
    run_id = await _start(engine, repo, [_action("s1", "send_email")])

    first = await engine.process(WS)
    assert first.retried == 1
    assert len(first.errors) == 1
    [item] = await repo.list_queue(WS, run_id)
    assert item.status == QueueStatus.QUEUED
    assert item.attempts == 1
    assert item.execute_at == T0 + timedelta(seconds=config.engine.retry_delay_seconds)
    assert (await repo.get_run(WS, run_id)).status == RunStatus.RUNNING

    # Not due yet.
    assert (await engine.process(WS)).processed == 0

    clock.advance(seconds=config.engine.retry_delay_seconds)
    second = await engine.process(WS)
    assert second.completed == 1
    assert len(mailer.sent) == 1


@pytest.mark.asyncio
async def test_attempts_exhausted_fails_run(repo, config, clock):
    config.engine.max_attempts = 2
    engine = AutomationEngine(repo, FailingMailer(failures=10), config=config, clock=clock)
    run_id = await _start(engine, repo, [_action("s1", "send_email")])

    await engine.process(WS)
    clock.advance(hours=1)
    result = await engine.process(WS)

    assert result.failed == 1
    run = await repo.get_run(WS, run_id)
    assert run.status == RunStatus.FAILED
    assert "smtp gateway down" in run.last_error
    [item] = await repo.list_queue(WS, run_id)
    assert item.status == QueueStatus.FAILED
    assert item.attempts == 2


@pytest.mark.asyncio
async def test_dangling_next_fails_run_without_retry(engine, repo, mailer):
    run_id = await _start(engine, repo, [_action("s1", "send_email", "ghost")])

    result = await engine.process(WS)

    assert result.failed == 1
    assert result.retried == 0
    assert mailer.sent == []
    run = await repo.get_run(WS, run_id)
    assert run.status == RunStatus.FAILED
    assert "ghost" in run.last_error


@pytest.mark.asyncio
async def test_invalid_definition_after_start_fails_run(engine, repo):
    run_id = await _start(engine, repo, [_action("s1", "send_email")])
    await repo.save_automation(_record([{"id": "s1", "type": "mystery", "config": {}}]))

    result = await engine.process(WS)

    assert result.failed == 1
    assert (await repo.get_run(WS, run_id)).status == RunStatus.FAILED


@pytest.mark.asyncio
async def test_deleted_contact_fails_run(engine, repo):
    run_id = await _start(engine, repo, [_action("s1", "send_email")])
    repo._contacts.clear()

    await engine.process(WS)

    run = await repo.get_run(WS, run_id)
    assert run.status == RunStatus.FAILED
    assert "c1" in run.last_error


@pytest.mark.asyncio
async def test_cycle_hits_step_ceiling(engine, repo, config):
    config.engine.max_steps_per_run = 5
    steps = [
        _action("a", "update_field", "b", field="temperature", value="warm"),
        _action("b", "update_field", "a", field="temperature", value="hot"),
    ]
    run_id = await _start(engine, repo, steps)

    for _ in range(10):
        await engine.process(WS)

    run = await repo.get_run(WS, run_id)
    assert run.status == RunStatus.FAILED
    assert run.steps_executed == 5
    assert "exceeded 5 steps" in run.last_error
    assert len(await repo.list_queue(WS, run_id)) == 6


@pytest.mark.asyncio
async def test_cancelled_run_item_is_skipped(engine, repo, mailer):
    run_id = await _start(engine, repo, [_action("s1", "send_email")])
    assert await engine.cancel_run(WS, run_id)

    result = await engine.process(WS)

    assert result.cancelled == 1
    assert mailer.sent == []
    [item] = await repo.list_queue(WS, run_id)
    assert item.status == QueueStatus.DONE
    assert not await engine.cancel_run(WS, run_id)


@pytest.mark.asyncio
async def test_deleted_automation_cancels_run(engine, repo, mailer):
    run_id = await _start(engine, repo, [_action("s1", "send_email")])
    repo._automations.clear()

    await engine.process(WS)

    assert (await repo.get_run(WS, run_id)).status == RunStatus.CANCELLED
    assert mailer.sent == []


@pytest.mark.asyncio
async def test_stale_processing_item_is_requeued(engine, repo, clock, config, mailer):
    run_id = await _start(engine, repo, [_action("s1", "send_email")])
    # A worker claimed the item and died.
    await repo.claim_due(WS, clock.now, 10)
    assert (await engine.process(WS)).processed == 0

    clock.advance(seconds=config.engine.processing_timeout_seconds + 1)
    result = await engine.process(WS)

    assert result.completed == 1
    assert (await repo.get_run(WS, run_id)).status == RunStatus.COMPLETED


def _two_emails():
    return [
        _action("s1", "send_email", "s2", subject="one"),
        _action("s2", "send_email", subject="two"),
    ]


async def _live_items(repo, run_id):
    return [
        (i.step_id, i.status)
        for i in await repo.list_queue(WS, run_id)
        if i.status != QueueStatus.DONE
    ]


@pytest.mark.asyncio
async def test_slow_worker_cannot_repeat_reclaimed_step(engine, repo, clock, config, mailer):
    run_id = await _start(engine, repo, _two_emails())
    [slow] = await repo.claim_due(WS, clock.now, 10)

    clock.advance(seconds=config.engine.processing_timeout_seconds + 60)
    assert (await engine.process(WS)).completed == 0
    assert [m.subject for m in mailer.sent] == ["one"]

    # The original worker wakes up and tries to finish its copy of s1.
    with pytest.raises(ClaimLostError):
        await engine.executor._handle_item(slow, T0, ProcessResult(workspace_id=WS))

    assert [m.subject for m in mailer.sent] == ["one"]
    assert await _live_items(repo, run_id) == [("s2", QueueStatus.QUEUED)]


class ReclaimingMailer(InMemoryMailer):
    """Another worker requeues and claims the item while a send is in flight."""

    def __init__(self, repo):
        super().__init__()
        self.repo = repo
        self.reclaimed = []

    async def send(self, request):
        await super().send(request)
        later = T0 + timedelta(hours=1)
        await self.repo.requeue_stale(request.workspace_id, later)
        self.reclaimed = await self.repo.claim_due(request.workspace_id, later, 10)


@pytest.mark.asyncio
async def test_claim_lost_during_step_drops_outcome(repo, config, clock):
    mailer = ReclaimingMailer(repo)
    engine = AutomationEngine(repo, mailer, config=config, clock=clock)
    run_id = await _start(engine, repo, _two_emails())

    result = await engine.process(WS)

    assert result.processed == 1
    assert result.completed == 0
    assert result.errors == []
    [current] = mailer.reclaimed
    [stored] = await repo.list_queue(WS, run_id)
    assert stored.status == QueueStatus.PROCESSING
    assert stored.claim_token == current.claim_token
    run = await repo.get_run(WS, run_id)
    assert run.status == RunStatus.RUNNING
    assert run.steps_executed == 0


class FlakyRepository(InMemoryEngineRepository):
    """Store reads fail for one automation; optionally so do retry writes."""

    def __init__(self):
        super().__init__()
        self.broken_automation = None
        self.fail_retry = False

    async def get_automation(self, workspace_id, automation_id):
        if automation_id == self.broken_automation:
            raise ConnectionError("store unavailable")
        return await super().get_automation(workspace_id, automation_id)

    async def retry_item(self, item, error, execute_at, now):
        if self.fail_retry:
            raise ConnectionError("store unavailable")
        await super().retry_item(item, error, execute_at, now)


@pytest.mark.asyncio
async def test_store_error_on_one_item_does_not_stop_batch(config, clock, mailer):
    repo = FlakyRepository()
    engine = AutomationEngine(repo, mailer, config=config, clock=clock)
    bad = await _start(engine, repo, [_action("s1", "send_email")], automation_id="bad")
    good = await _start(engine, repo, [_action("s1", "send_email")], automation_id="good")
    repo.broken_automation = "bad"

    result = await engine.process(WS)

    assert result.processed == 2
    assert result.completed == 1
    assert result.retried == 1
    assert len(result.errors) == 1
    assert "store unavailable" in result.errors[0]
    assert (await repo.get_run(WS, good)).status == RunStatus.COMPLETED
    [item] = await repo.list_queue(WS, bad)
    assert item.status == QueueStatus.QUEUED
    assert item.attempts == 1
    assert item.execute_at == T0 + timedelta(seconds=config.engine.retry_delay_seconds)


@pytest.mark.asyncio
async def test_unrecorded_outcome_is_reported_not_raised(config, clock, mailer):
    repo = FlakyRepository()
    engine = AutomationEngine(repo, mailer, config=config, clock=clock)
    bad = await _start(engine, repo, [_action("s1", "send_email")], automation_id="bad")
    good = await _start(engine, repo, [_action("s1", "send_email")], automation_id="good")
    repo.broken_automation = "bad"
    repo.fail_retry = True

    result = await engine.process(WS)

    assert result.processed == 2
    assert result.completed == 1
    assert len(result.errors) == 1
    assert (await repo.get_run(WS, good)).status == RunStatus.COMPLETED
    [item] = await repo.list_queue(WS, bad)
    assert item.status == QueueStatus.PROCESSING

    # Stale recovery hands the stranded item to a later batch.
    repo.fail_retry = False
    clock.advance(seconds=config.engine.processing_timeout_seconds + 1)
    later = await engine.process(WS)
    assert later.processed == 1
    assert later.retried == 1
