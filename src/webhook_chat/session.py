"""Client-side chat state: message list, typing flag and retry bookkeeping.

A :class:`ChatSession` owns the conversation shown in the UI. It talks to the
``/chat`` route through a :class:`ChatTransport` and notifies subscribers after
every state change; renderers read ``session.messages`` and never mutate it.

Only one exchange is in flight at a time: ``send_message`` and
``retry_message`` are both refused while ``is_typing`` is set.
"""
from __future__ import annotations

import asyncio
import logging
import threading
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, List, Optional, Protocol, Tuple

import httpx

from .schemas import ChatRequest

logger = logging.getLogger(__name__)

DEFAULT_ACK = "I received your message."
COPY_RESET_S = 2.0


class Sender(str, Enum):
    USER = "user"
    BOT = "bot"


@dataclass
class Message:
    """A single chat bubble.

    ``source_text``/``source_timestamp`` are only set on failed bot messages and
    hold the user message that a retry must resend.
    """
    id: str
    text: str
    sender: Sender
    timestamp: datetime
    error: bool = False
    retryable: bool = False
    source_text: Optional[str] = None
    source_timestamp: Optional[datetime] = None


def iso_timestamp(ts: datetime) -> str:
    """``2024-05-01T12:00:00.000Z`` style, as browsers emit it."""
    return ts.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def reply_text(data: Any) -> str:
    """Pick the text to show from a ``/chat`` success body."""
    if isinstance(data, dict):
        for key in ("response", "message"):
            value = data.get(key)
            if value:
                return value if isinstance(value, str) else str(value)
        return DEFAULT_ACK
    if isinstance(data, str) and data:
        return data
    return DEFAULT_ACK


# -----------------------------
# Transport
# -----------------------------
class TransportError(Exception):
    """A failed exchange; ``reason`` is shown to the user."""

    def __init__(self, reason: str, status_code: Optional[int] = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.status_code = status_code


class ChatTransport(Protocol):
    async def send(self, message: str, timestamp: str) -> Any: ...


class HttpChatTransport:
    """POSTs to the server's ``/chat`` route over httpx."""

    def __init__(
        self,
        base_url: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 60.0,
        path: str = "/chat",
    ) -> None:
        self.url = base_url.rstrip("/") + path
        self.timeout = timeout
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient()

    async def send(self, message: str, timestamp: str) -> Any:
        payload = ChatRequest(message=message, timestamp=timestamp).model_dump()
        try:
            resp = await self.client.post(self.url, json=payload, timeout=self.timeout)
        except httpx.HTTPError as e:
            raise TransportError(str(e) or e.__class__.__name__) from e

        if not resp.is_success:
            try:
                data = resp.json()
            except ValueError:
                data = {}
            error = data.get("error") if isinstance(data, dict) else None
            raise TransportError(error or f"Server error ({resp.status_code})", resp.status_code)

        try:
            return resp.json()
        except ValueError as e:
            raise TransportError("Invalid response from server", resp.status_code) from e

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def __aenter__(self) -> "HttpChatTransport":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.aclose()


# -----------------------------
# Session
# -----------------------------
Listener = Callable[["ChatSession"], None]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


class ChatSession:
    """Conversation state machine driven by the UI.

    Parameters
    ----------
    transport : ChatTransport
        Sends one message and returns the decoded reply body.
    clipboard : Callable[[str], None] | None
        Receives text from :meth:`copy_message`.
    id_factory : Callable[[], str] | None
        Message id generator; defaults to random UUIDs.
    clock : Callable[[], datetime] | None
        Source of message timestamps.
    welcome_text : str | None
        If set, a bot greeting is added the first time the (still empty)
        message list is read.
    """

    def __init__(
        self,
        transport: ChatTransport,
        *,
        clipboard: Optional[Callable[[str], None]] = None,
        id_factory: Optional[Callable[[], str]] = None,
        clock: Optional[Callable[[], datetime]] = None,
        welcome_text: Optional[str] = None,
        copy_reset_s: float = COPY_RESET_S,
    ) -> None:
        self.transport = transport
        self.clipboard = clipboard
        self._new_id = id_factory or _new_id
        self._now = clock or _utc_now
        self.welcome_text = welcome_text
        self.copy_reset_s = copy_reset_s

        self._messages: List[Message] = []
        self._welcomed = False
        self.input = ""
        self.is_typing = False
        self.retrying_message_id: Optional[str] = None
        self.copied_id: Optional[str] = None

        self._listeners: List[Listener] = []
        self._copy_reset: Any = None  # asyncio.TimerHandle | threading.Timer

    # --------- read side ----------
    def _ensure_welcome(self) -> None:
        if self._welcomed:
            return
        self._welcomed = True
        if self.welcome_text and not self._messages:
            self._messages.append(self._bot(self.welcome_text))

    @property
    def messages(self) -> Tuple[Message, ...]:
        self._ensure_welcome()
        return tuple(replace(m) for m in self._messages)

    def _find(self, message_id: str) -> Optional[Message]:
        for m in self._messages:
            if m.id == message_id:
                return m
        return None

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener``; returns a function that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception:
                logger.exception("Chat session listener failed")

    # --------- builders ----------
    def _bot(self, text: str, **kw: Any) -> Message:
        return Message(id=self._new_id(), text=text, sender=Sender.BOT, timestamp=self._now(), **kw)

    # --------- operations ----------
    def set_input(self, text: str) -> None:
        self.input = text
        self._notify()

    async def send_message(self, text: Optional[str] = None) -> None:
        """Send ``text`` (or the current input) and append the reply."""
        raw = self.input if text is None else text
        if not raw.strip() or self.is_typing:
            return

        self._ensure_welcome()
        user = Message(id=self._new_id(), text=raw.strip(), sender=Sender.USER, timestamp=self._now())
        self._messages.append(user)
        self.input = ""
        self.is_typing = True
        self._notify()

        try:
            data = await self.transport.send(user.text, iso_timestamp(user.timestamp))
            self._messages.append(self._bot(reply_text(data)))
        except Exception as e:
            if isinstance(e, TransportError):
                logger.debug("Send failed: %s", e.reason)
                error_text = f"Sorry, I encountered an error: {e.reason}. Click retry to try again."
            else:
                logger.exception("Unexpected error while sending")
                error_text = "Sorry, I encountered an unexpected error. Click retry to try again."
            self._messages.append(
                self._bot(
                    error_text,
                    error=True,
                    retryable=True,
                    source_text=user.text,
                    source_timestamp=user.timestamp,
                )
            )
        finally:
            self.is_typing = False
            self._notify()

    async def retry_message(self, message_id: str) -> None:
        """Resend the user message behind a failed bot bubble."""
        failed = self._find(message_id)
        if failed is None or not failed.retryable or self.is_typing:
            return

        self.retrying_message_id = message_id
        self.is_typing = True
        self._notify()

        text = failed.source_text if failed.source_text is not None else failed.text
        ts = failed.source_timestamp or failed.timestamp
        try:
            data = await self.transport.send(text, iso_timestamp(ts))
            self._messages = [m for m in self._messages if m.id != message_id]
            self._messages.append(self._bot(reply_text(data)))
        except Exception as e:
            if isinstance(e, TransportError):
                reason = e.reason
            else:
                logger.exception("Unexpected error while retrying")
                reason = "Unknown error"
            failed.text = f"Retry failed: {reason}"
        finally:
            self.is_typing = False
            self.retrying_message_id = None
            self._notify()

    def copy_message(self, text: str, message_id: str) -> None:
        """Copy ``text`` out and flag ``message_id`` as copied for a short while.

        Inside a running event loop the reset is scheduled on that loop. Without
        one it fires from a daemon ``threading.Timer``, so listeners are then
        notified on the timer thread and must be thread-safe.
        """
        if self.clipboard is not None:
            self.clipboard(text)
        self.copied_id = message_id
        self._schedule_copy_reset(message_id)
        self._notify()

    def _schedule_copy_reset(self, message_id: str) -> None:
        if self._copy_reset is not None:
            self._copy_reset.cancel()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            timer = threading.Timer(self.copy_reset_s, self._clear_copied, args=(message_id,))
            timer.daemon = True
            timer.start()
            self._copy_reset = timer
        else:
            self._copy_reset = loop.call_later(self.copy_reset_s, self._clear_copied, message_id)

    def _clear_copied(self, message_id: str) -> None:
        self._copy_reset = None
        if self.copied_id == message_id:
            self.copied_id = None
            self._notify()
