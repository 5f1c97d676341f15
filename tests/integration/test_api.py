"""HTTP surface tests using FastAPI's TestClient."""

import asyncio

import pytest
from fastapi.testclient import TestClient

from conftest import WS, make_contact, signup_automation
from flowmail.api import create_app
from flowmail.constants import RUNNER_TOKEN_HEADER
from flowmail.engine import AutomationEngine
from flowmail.mailers import InMemoryMailer
from flowmail.persistence import ContactEvent


@pytest.fixture
def client(engine):
    return TestClient(create_app(engine))


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_scan_process_and_runs(client, engine, repo, mailer):
    asyncio.run(repo.save_automation(signup_automation()))
    asyncio.run(repo.save_contact(make_contact()))
    asyncio.run(
        repo.append_event(
            ContactEvent(workspace_id=WS, contact_id="c1", type="form_submitted", meta={"form": "Signup"})
        )
    )

    scan = client.post("/scan", json={"workspaceId": WS, "limit": 500})
    assert scan.status_code == 200
    body = scan.json()
    assert body["ok"] is True
    assert body["matched"] == 1
    assert body["processedEvents"] == 1
    assert body["cursorAdvanced"] is True
    assert body["errors"] == []

    process = client.post("/process", json={"workspaceId": WS, "batchSize": 0})
    assert process.status_code == 200
    assert process.json()["processed"] == 1
    assert len(mailer.sent) == 1

    runs = client.post("/runs", json={"workspaceId": WS, "automationId": "a1"})
    [row] = runs.json()["rows"]
    assert row["status"] == "completed"
    assert row["automation_id"] == "a1"


def test_trigger_validation(client, repo):
    asyncio.run(repo.save_automation(signup_automation()))

    assert client.post("/trigger", json={"workspaceId": WS, "contactId": "c1"}).status_code == 400
    assert client.post("/trigger", json={"workspaceId": WS, "automationId": "a1"}).status_code == 400
    missing = client.post(
        "/trigger", json={"workspaceId": WS, "automationId": "zzz", "contactId": "c1"}
    )
    assert missing.status_code == 404

    ok = client.post("/trigger", json={"workspaceId": WS, "automationId": "a1", "contactId": "c1"})
    assert ok.status_code == 200
    assert ok.json()["stepId"] == "s1"
    run_id = ok.json()["runId"]

    cancel = client.post("/runs/cancel", json={"workspaceId": WS, "runId": run_id})
    assert cancel.json() == {"ok": True, "cancelled": True}
    unknown = client.post("/runs/cancel", json={"workspaceId": WS, "runId": "nope"})
    assert unknown.status_code == 404


def test_trigger_automation_without_steps_is_bad_request(client, repo):
    empty = signup_automation("empty")
    empty.steps = []
    asyncio.run(repo.save_automation(empty))

    response = client.post(
        "/trigger", json={"workspaceId": WS, "automationId": "empty", "contactId": "c1"}
    )
    assert response.status_code == 400


def test_runner_token_required_when_configured(client, engine):
    engine.config.runner_token = "s3cret"

    assert client.post("/scan", json={"workspaceId": WS}).status_code == 401
    assert (
        client.post("/scan", json={"workspaceId": WS}, headers={RUNNER_TOKEN_HEADER: "wrong"}).status_code
        == 401
    )
    ok = client.post("/scan", json={"workspaceId": WS}, headers={RUNNER_TOKEN_HEADER: "s3cret"})
    assert ok.status_code == 200
    assert client.get("/health").status_code == 200


def test_tick_endpoint(client, repo):
    asyncio.run(repo.save_automation(signup_automation()))
    response = client.post("/tick", json={})
    assert response.status_code == 200
    assert response.json()["workspaces"] == 1


class ClosingMailer(InMemoryMailer):
    def __init__(self):
        super().__init__()
        self.closed = False

    async def disconnect(self):
        self.closed = True


def test_shutdown_closes_engine_mailer(repo, config, clock):
    mailer = ClosingMailer()
    engine = AutomationEngine(repo, mailer, config=config, clock=clock)

    with TestClient(create_app(engine)) as client:
        assert client.get("/health").status_code == 200
        assert not mailer.closed

    assert mailer.closed
