"""Pytest configuration and shared fixtures."""
from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Callable, List

import httpx
import pytest

# Ensure src/ is on the import path (for local imports without installing as package)
SRC_PATH = Path(__file__).resolve().parent.parent / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from webhook_chat.config import Settings  # noqa: E402

WEBHOOK_URL = "https://hooks.example.test/webhook/chat"


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


class WebhookStub:
    """Records every request and answers with a configurable handler."""

    def __init__(self, handler: Callable[[httpx.Request], httpx.Response]) -> None:
        self.handler = handler
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handler(request)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    return Settings(webhook_url=WEBHOOK_URL, environment="test", sweep_interval_s=0)


@pytest.fixture(scope="function")
def clean_env(monkeypatch: pytest.MonkeyPatch):
    """Ensure tests run with a clean environment (no leftover vars)."""
    for var in ["WEBHOOK_CHAT_CONFIG", "N8N_WEBHOOK_URL", "WEBHOOK_URL", "APP_ENV", "NODE_ENV"]:
        monkeypatch.delenv(var, raising=False)
    for var in list(os.environ):
        if var.startswith("WEBHOOK_CHAT__"):
            monkeypatch.delenv(var, raising=False)
    yield


@pytest.fixture
def webhook_json() -> WebhookStub:
    return WebhookStub(lambda request: httpx.Response(200, json={"response": "hi"}))
