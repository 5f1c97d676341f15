"""Run a signup automation end to end with in-memory stores."""

import asyncio

from flowmail import AutomationEngine
from flowmail.mailers import InMemoryMailer
from flowmail.persistence import (
    AutomationRecord,
    Contact,
    ContactEvent,
    InMemoryEngineRepository,
)

WORKSPACE = "demo"


async def main():
    repository = InMemoryEngineRepository()
    mailer = InMemoryMailer()
    engine = AutomationEngine(repository, mailer)

    await repository.save_automation(
        AutomationRecord(
            workspace_id=WORKSPACE,
            id="welcome",
            name="Welcome series",
            steps=[
                {"id": "t1", "type": "trigger", "config": {"kind": "trigger.form_submitted", "form": "Signup", "next": "c1"}},
                {"id": "c1", "type": "condition", "config": {"kind": "condition.lead_score", "op": ">=", "value": 50, "nextYes": "s1", "nextNo": "w1"}},
                {"id": "s1", "type": "action", "config": {"kind": "action.send_email", "subject": "Let's talk, {{firstName}}"}},
                {"id": "w1", "type": "wait", "config": {"days": 2, "next": "s2"}},
                {"id": "s2", "type": "action", "config": {"kind": "action.send_email", "subject": "Getting started"}},
            ],
        )
    )
    await repository.save_contact(
        Contact(workspace_id=WORKSPACE, id="c-1", email="grace@example.com", first_name="Grace", lead_score=72)
    )
    await repository.append_event(
        ContactEvent(workspace_id=WORKSPACE, contact_id="c-1", type="form_submitted", meta={"form": "Signup"})
    )

    print(await engine.scan(WORKSPACE))
    print(await engine.process(WORKSPACE))
    print(await engine.process(WORKSPACE))

    for run in await engine.list_runs(WORKSPACE):
        print(f"{run.id} {run.status.value} at {run.current_step_id}")
    for message in mailer.sent:
        print(f"-> {message.to_email}: {message.subject}")


if __name__ == "__main__":
    asyncio.run(main())
