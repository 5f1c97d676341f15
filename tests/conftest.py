"""Shared fixtures: a controllable clock, in-memory stores and sample graphs."""

from datetime import datetime, timedelta, timezone

import pytest

import flowmail.persistence as persistence
from flowmail.config import FlowmailConfig
from flowmail.engine import AutomationEngine
from flowmail.mailers import InMemoryMailer
from flowmail.persistence import AutomationRecord, Contact, InMemoryEngineRepository

WS = "ws-test"
T0 = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def signup_automation(automation_id: str = "a1", status: str = "Running") -> AutomationRecord:
    """Form submit trigger followed by a single email, in the builder's format."""
    return AutomationRecord(
        workspace_id=WS,
        id=automation_id,
        name="Signup welcome",
        status=status,
        steps=[
            {
                "id": "t1",
                "type": "trigger",
                "config": {"kind": "trigger.form_submitted", "form": "Signup", "next": "s1"},
            },
            {
                "id": "s1",
                "type": "action",
                "config": {
                    "kind": "action.send_email",
                    "subject": "Welcome {{firstName}}",
                    "body": "Hi {{fullName}}",
                },
            },
        ],
    )


def lead_score_automation(automation_id: str = "a2") -> AutomationRecord:
    return AutomationRecord(
        workspace_id=WS,
        id=automation_id,
        name="Hot lead routing",
        steps=[
            {"id": "t1", "type": "trigger", "config": {"kind": "trigger.email_open", "next": "c1"}},
            {
                "id": "c1",
                "type": "condition",
                "config": {
                    "kind": "condition.lead_score",
                    "op": ">",
                    "value": 50,
                    "nextYes": "yes",
                    "nextNo": "no",
                },
            },
            {
                "id": "yes",
                "type": "action",
                "config": {"kind": "action.send_email", "subject": "Book a call"},
            },
            {
                "id": "no",
                "type": "action",
                "config": {"kind": "action.send_email", "subject": "Learn more"},
            },
        ],
    )


def make_contact(contact_id: str = "c1", **fields) -> Contact:
    data = {
        "workspace_id": WS,
        "id": contact_id,
        "email": f"{contact_id}@example.com",
        "first_name": "Ada",
        "last_name": "Lovelace",
    }
    data.update(fields)
    return Contact(**data)


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch, tmp_path):
    for var in (
        "FLOWMAIL_CONFIG",
        "FLOWMAIL_DATABASE_URL",
        "DATABASE_URL",
        "FLOWMAIL_MAILER",
        "FLOWMAIL_RUNNER_TOKEN",
        "TEAM_NOTIFY_EMAIL",
    ):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)
    persistence.set_repository(None)
    yield
    persistence.set_repository(None)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def repo() -> InMemoryEngineRepository:
    return InMemoryEngineRepository()


@pytest.fixture
def mailer() -> InMemoryMailer:
    return InMemoryMailer()


@pytest.fixture
def config() -> FlowmailConfig:
    config = FlowmailConfig(team_notify_email="team@example.com")
    config.engine.retry_jitter_seconds = 0
    return config


@pytest.fixture
def engine(repo, mailer, config, clock) -> AutomationEngine:
    return AutomationEngine(repo, mailer, config=config, clock=clock)
