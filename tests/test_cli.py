from __future__ import annotations

import itertools
from datetime import datetime, timezone
from typing import Any, List

import pytest

from webhook_chat.cli import _last_retryable, chat_loop, render_transcript
from webhook_chat.session import ChatSession, Message, Sender, TransportError

TS = datetime(2024, 5, 1, 9, 30, tzinfo=timezone.utc)


class ScriptedTransport:
    def __init__(self, *outcomes: Any) -> None:
        self.outcomes = list(outcomes)

    async def send(self, message: str, timestamp: str) -> Any:
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


def make_session(*outcomes: Any) -> ChatSession:
    counter = itertools.count(1)
    return ChatSession(
        ScriptedTransport(*outcomes),
        id_factory=lambda: f"m{next(counter)}",
        clock=lambda: TS,
    )


def lines_from(*inputs: str):
    pending = list(inputs)

    async def read_line() -> str:
        if not pending:
            raise EOFError
        return pending.pop(0)

    return read_line


def test_render_transcript_marks_retryable_errors():
    messages = [
        Message(id="1", text="Hello", sender=Sender.USER, timestamp=TS),
        Message(id="2", text="Sorry, it broke.", sender=Sender.BOT, timestamp=TS, error=True, retryable=True),
    ]
    assert render_transcript(messages) == (
        "[09:30] you: Hello\n"
        "[09:30] bot: Sorry, it broke.  (type /retry)"
    )


def test_last_retryable_is_none_for_clean_session():
    session = ChatSession(transport=None, welcome_text="hi")  # type: ignore[arg-type]
    assert _last_retryable(session) is None


@pytest.mark.asyncio
async def test_identical_messages_are_each_printed():
    out: List[str] = []
    session = make_session({"response": "ok"}, {"response": "ok"})

    await chat_loop(session, lines_from("hello", "hello", "/quit"), out.append)

    assert out == [
        "[09:30] you: hello",
        "[09:30] bot: ok",
        "[09:30] you: hello",
        "[09:30] bot: ok",
    ]


@pytest.mark.asyncio
async def test_failed_retry_reprints_rewritten_bubble():
    out: List[str] = []
    session = make_session(TransportError("boom"), TransportError("still down"))

    await chat_loop(session, lines_from("hello", "/retry"), out.append)

    assert out[-1] == "[09:30] bot: Retry failed: still down  (type /retry)"
    assert sum(1 for line in out if line.startswith("[09:30] bot:")) == 2


@pytest.mark.asyncio
async def test_retry_with_nothing_failed_says_so():
    out: List[str] = []
    await chat_loop(make_session(), lines_from("/retry"), out.append)
    assert out == ["nothing to retry"]
