"""Line-based terminal client for the chat server.

Usage
-----
python -m webhook_chat.cli --url http://127.0.0.1:8000

Type a message and press enter. ``/retry`` resends the most recent failed
message, ``/quit`` exits.
"""
from __future__ import annotations

import argparse
import asyncio
import os
from typing import Awaitable, Callable, Dict, Iterable, List, Optional

from .session import ChatSession, HttpChatTransport, Message, Sender

WELCOME = "Hi! Send a message to start the conversation."


def render_message(m: Message) -> str:
    who = "you" if m.sender == Sender.USER else "bot"
    line = f"[{m.timestamp:%H:%M}] {who}: {m.text}"
    if m.error and m.retryable:
        line += "  (type /retry)"
    return line


def render_transcript(messages: Iterable[Message]) -> str:
    return "\n".join(render_message(m) for m in messages)


def _last_retryable(session: ChatSession) -> Optional[str]:
    for m in reversed(session.messages):
        if m.retryable:
            return m.id
    return None


async def chat_loop(
    session: ChatSession,
    read_line: Callable[[], Awaitable[str]],
    write: Callable[[str], None] = print,
) -> None:
    """Drive ``session`` from ``read_line`` until ``/quit`` or end of input."""
    shown: Dict[str, str] = {}

    def repaint(s: ChatSession) -> None:
        # Append-only terminal: print bubbles we have not printed yet,
        # reprint ones whose text changed after a failed retry.
        for m in s.messages:
            line = render_message(m)
            if shown.get(m.id) != line:
                shown[m.id] = line
                write(line)

    session.subscribe(repaint)
    repaint(session)

    while True:
        try:
            line = await read_line()
        except EOFError:
            break
        cmd = line.strip()
        if cmd == "/quit":
            break
        if cmd == "/retry":
            target = _last_retryable(session)
            if target is None:
                write("nothing to retry")
                continue
            await session.retry_message(target)
            continue
        await session.send_message(line)


async def run(url: str, timeout: float) -> None:
    async with HttpChatTransport(url, timeout=timeout) as transport:
        session = ChatSession(transport, welcome_text=WELCOME)
        await chat_loop(session, lambda: asyncio.to_thread(input, "> "))


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Chat with the webhook chat server.")
    parser.add_argument(
        "--url",
        type=str,
        default=os.environ.get("CHAT_SERVER_URL", "http://127.0.0.1:8000"),
        help="Base URL of the chat server (default: http://127.0.0.1:8000)",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=60.0,
        help="Seconds to wait for each reply (default: 60)",
    )
    args = parser.parse_args(argv)
    try:
        asyncio.run(run(args.url, args.timeout))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
