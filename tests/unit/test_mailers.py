"""Mailer tests."""

import json

import httpx
import pytest

from flowmail.contracts import SendRequest
from flowmail.mailers import InMemoryMailer
from flowmail.mailers.http import HttpMailer


def _request(**fields):
    data = dict(
        workspace_id="ws",
        automation_id="a1",
        run_id="r1",
        step_id="s1",
        contact_id="c1",
        to_email="ada@example.com",
        subject="Hello",
        body="Hi Ada",
    )
    data.update(fields)
    return SendRequest(**data)


@pytest.mark.asyncio
async def test_inmemory_mailer_collects_requests():
    mailer = InMemoryMailer()
    await mailer.send(_request())
    await mailer.send(_request(to_email="bob@example.com"))

    assert len(mailer.sent) == 2
    assert [r.subject for r in mailer.sent_to("bob@example.com")] == ["Hello"]


def test_send_request_json_roundtrip():
    request = _request(kind="notification")
    restored = SendRequest.from_json(request.to_json())
    assert restored == request


@pytest.mark.asyncio
async def test_http_mailer_posts_json_with_token():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(202, json={"queued": True})

    mailer = HttpMailer(
        "https://gateway.test/send", token="secret", transport=httpx.MockTransport(handler)
    )
    await mailer.send(_request())
    await mailer.disconnect()

    [sent] = seen
    assert sent.method == "POST"
    assert sent.headers["Authorization"] == "Bearer secret"
    body = json.loads(sent.content)
    assert body["to_email"] == "ada@example.com"
    assert body["subject"] == "Hello"


@pytest.mark.asyncio
async def test_http_mailer_raises_on_gateway_error():
    mailer = HttpMailer(
        "https://gateway.test/send",
        transport=httpx.MockTransport(lambda request: httpx.Response(503)),
    )
    with pytest.raises(httpx.HTTPStatusError):
        await mailer.send(_request())
    await mailer.disconnect()


@pytest.mark.asyncio
async def test_redis_mailer_pushes_to_queue(monkeypatch):
    from flowmail.mailers.redis import RedisMailer

    pushed = []

    class FakeRedis:
        async def lpush(self, queue, value):
            pushed.append((queue, value))

    mailer = RedisMailer(queue="test:outbox")
    mailer._redis = FakeRedis()
    await mailer.send(_request())

    [(queue, value)] = pushed
    assert queue == "test:outbox"
    assert SendRequest.from_json(value).to_email == "ada@example.com"
