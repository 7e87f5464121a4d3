"""Error taxonomy shared by the forwarder and the HTTP layer.

Every failure the ``/chat`` route can produce is one of these. The HTTP layer
only ever exposes ``public_message``; the underlying cause stays in the logs.
"""
from __future__ import annotations

from typing import Optional

MESSAGE_REQUIRED = "Message is required and must be a string"
RATE_LIMITED = "Too many requests. Please try again later."
SERVER_CONFIGURATION = "Server configuration error"
UPSTREAM_FAILED = "Failed to get response from AI"
INTERNAL = "Internal server error"


def message_too_long(limit: int) -> str:
    return f"Message too long. Maximum {limit} characters allowed."


class ChatError(Exception):
    """Base class; carries the HTTP status and client-facing text."""

    status_code: int = 500
    public_message: str = INTERNAL
    retryable: bool = True

    def __init__(self, public_message: Optional[str] = None, *, status_code: Optional[int] = None) -> None:
        if public_message is not None:
            self.public_message = public_message
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.public_message)

    def to_dict(self) -> dict:
        return {"error": self.public_message}


class InvalidInput(ChatError):
    status_code = 400
    public_message = MESSAGE_REQUIRED
    retryable = False


class RateLimited(ChatError):
    status_code = 429
    public_message = RATE_LIMITED

    def __init__(self, retry_after_s: float = 0.0) -> None:
        super().__init__()
        self.retry_after_s = max(0.0, retry_after_s)


class Misconfigured(ChatError):
    status_code = 500
    public_message = SERVER_CONFIGURATION
    retryable = False


class UpstreamError(ChatError):
    """The webhook call failed; ``upstream_status`` is None for network errors."""

    public_message = UPSTREAM_FAILED

    def __init__(self, upstream_status: Optional[int] = None, detail: str = "") -> None:
        super().__init__(status_code=upstream_status or 500)
        self.upstream_status = upstream_status
        self.detail = detail


class InternalError(ChatError):
    status_code = 500
    public_message = INTERNAL
