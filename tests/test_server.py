from __future__ import annotations

import logging
import time

import httpx
import pytest
from fastapi.testclient import TestClient

from webhook_chat.config import Settings
from webhook_chat.forwarder import EMPTY_UPSTREAM_REPLY
from webhook_chat.ratelimit import RateLimiter
from webhook_chat.server import create_app

from conftest import WEBHOOK_URL, FakeClock, WebhookStub

QUIET = logging.getLogger("server-test")


def make_client(settings: Settings, stub: WebhookStub, limiter: RateLimiter | None = None) -> TestClient:
    app = create_app(settings=settings, http_client=stub.client(), limiter=limiter, logger=QUIET)
    return TestClient(app)


def test_chat_endpoint_roundtrip(settings: Settings, webhook_json: WebhookStub):
    """Basic sanity check: /chat forwards and returns the webhook JSON."""
    client = make_client(settings, webhook_json)

    r = client.post("/chat", json={"message": "Hello", "timestamp": "2024-05-01T12:00:00.000Z"})
    assert r.status_code == 200
    assert r.json() == {"response": "hi"}
    assert len(webhook_json.requests) == 1


def test_plain_and_empty_upstream_bodies(settings: Settings):
    bodies = iter(["plain text reply", ""])
    stub = WebhookStub(lambda request: httpx.Response(200, text=next(bodies)))
    client = make_client(settings, stub)

    assert client.post("/chat", json={"message": "a"}).json() == {"response": "plain text reply"}
    assert client.post("/chat", json={"message": "b"}).json() == {"response": EMPTY_UPSTREAM_REPLY}


def test_validation_errors(settings: Settings, webhook_json: WebhookStub):
    client = make_client(settings, webhook_json)

    r = client.post("/chat", json={"timestamp": "t"})
    assert r.status_code == 400
    assert r.json() == {"error": "Message is required and must be a string"}

    r = client.post("/chat", json={"message": "x" * 1001})
    assert r.status_code == 400
    assert r.json() == {"error": "Message too long. Maximum 1000 characters allowed."}

    r = client.post("/chat", content=b"{not json", headers={"content-type": "application/json"})
    assert r.status_code == 400

    assert webhook_json.requests == []


def test_unconfigured_webhook_is_server_error(webhook_json: WebhookStub):
    client = make_client(Settings(webhook_url=None, sweep_interval_s=0), webhook_json)
    r = client.post("/chat", json={"message": "Hello"})
    assert r.status_code == 500
    assert r.json() == {"error": "Server configuration error"}
    assert webhook_json.requests == []


def test_upstream_status_passthrough(settings: Settings):
    stub = WebhookStub(lambda request: httpx.Response(502, text="bad gateway"))
    client = make_client(settings, stub)
    r = client.post("/chat", json={"message": "Hello"})
    assert r.status_code == 502
    assert r.json() == {"error": "Failed to get response from AI"}
    assert "bad gateway" not in r.text


def test_rate_limit_per_forwarded_client(settings: Settings, webhook_json: WebhookStub):
    client = make_client(settings, webhook_json, RateLimiter(clock=FakeClock()))
    headers = {"X-Forwarded-For": "203.0.113.9"}

    for _ in range(10):
        assert client.post("/chat", json={"message": "hi"}, headers=headers).status_code == 200

    r = client.post("/chat", json={"message": "hi"}, headers=headers)
    assert r.status_code == 429
    assert r.json() == {"error": "Too many requests. Please try again later."}
    assert r.headers["retry-after"] == "60"

    # a different claimed address has its own bucket
    other = client.post("/chat", json={"message": "hi"}, headers={"X-Forwarded-For": "198.51.100.1"})
    assert other.status_code == 200


def test_untrusted_forwarded_header_shares_peer_bucket(webhook_json: WebhookStub):
    s = Settings(webhook_url=WEBHOOK_URL, rate_limit=1, trust_forwarded_for=False, sweep_interval_s=0)
    client = make_client(s, webhook_json)

    assert client.post("/chat", json={"message": "hi"}, headers={"X-Forwarded-For": "1.1.1.1"}).status_code == 200
    assert client.post("/chat", json={"message": "hi"}, headers={"X-Forwarded-For": "2.2.2.2"}).status_code == 429


def test_health_reports_configuration(settings: Settings, webhook_json: WebhookStub):
    with make_client(settings, webhook_json) as client:
        r = client.get("/health")
    assert r.status_code == 200
    assert r.headers["cache-control"] == "no-cache, no-store, must-revalidate"
    body = r.json()
    assert body["status"] == "healthy"
    assert body["environment"] == "test"
    assert body["services"] == {"webhook": "configured"}
    assert body["timestamp"]


def test_health_unhealthy_without_webhook(webhook_json: WebhookStub):
    client = make_client(Settings(webhook_url=None, environment="production", sweep_interval_s=0), webhook_json)
    r = client.get("/health")
    assert r.status_code == 503
    assert r.headers["cache-control"] == "no-cache, no-store, must-revalidate"
    assert r.json()["status"] == "unhealthy"
    assert r.json()["services"] == {"webhook": "not configured"}


def test_environment_flag_does_not_change_limits(webhook_json: WebhookStub):
    for env in ("development", "production"):
        s = Settings(webhook_url=WEBHOOK_URL, environment=env, rate_limit=2, sweep_interval_s=0)
        client = make_client(s, webhook_json)
        codes = [client.post("/chat", json={"message": "hi"}).status_code for _ in range(3)]
        assert codes == [200, 200, 429]


@pytest.mark.parametrize("body", ["NaN", "Infinity", "-Infinity", '{"score": NaN}'])
def test_non_standard_json_constants_are_wrapped_as_text(settings: Settings, body: str):
    stub = WebhookStub(lambda request: httpx.Response(200, text=body))
    r = make_client(settings, stub).post("/chat", json={"message": "Hello"})
    assert r.status_code == 200
    assert r.json() == {"response": body}


def test_unencodable_reply_is_json_internal_error(settings: Settings):
    # valid JSON, but the lone surrogate cannot be written back out as UTF-8
    stub = WebhookStub(lambda request: httpx.Response(200, text='"\\ud800"'))
    r = make_client(settings, stub).post("/chat", json={"message": "Hello"})
    assert r.status_code == 500
    assert r.headers["content-type"].startswith("application/json")
    assert r.json() == {"error": "Internal server error"}


def test_lifespan_sweeps_expired_records(webhook_json: WebhookStub):
    clock = FakeClock()
    limiter = RateLimiter(clock=clock)
    s = Settings(webhook_url=WEBHOOK_URL, sweep_interval_s=0.01)
    app = create_app(settings=s, http_client=webhook_json.client(), limiter=limiter, logger=QUIET)

    with TestClient(app):
        assert limiter.allow("203.0.113.5", 10, 1000)
        clock.advance(2000)
        deadline = time.monotonic() + 2.0
        while limiter.store.get("203.0.113.5") is not None and time.monotonic() < deadline:
            time.sleep(0.01)
        assert limiter.store.get("203.0.113.5") is None


def test_lifespan_closes_owned_client_only(settings: Settings, webhook_json: WebhookStub):
    owned = create_app(settings=settings, logger=QUIET)
    with TestClient(owned):
        assert not owned.state.http_client.is_closed
    assert owned.state.http_client.is_closed

    injected = webhook_json.client()
    borrowed = create_app(settings=settings, http_client=injected, logger=QUIET)
    with TestClient(borrowed):
        pass
    assert not injected.is_closed
