"""Relay chat messages to the configured workflow webhook."""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

import httpx

from .config import Settings
from .errors import (
    MESSAGE_REQUIRED,
    ChatError,
    InternalError,
    InvalidInput,
    Misconfigured,
    RateLimited,
    UpstreamError,
    message_too_long,
)
from .ratelimit import RateLimiter

EMPTY_UPSTREAM_REPLY = (
    "I received your message but got an empty response. "
    "Please check your n8n workflow configuration."
)


class WebhookForwarder:
    """Validate, rate-limit and forward one chat message.

    Parameters
    ----------
    settings : Settings
        Limits, timeout and the webhook URL.
    limiter : RateLimiter
        Shared across requests; this class is its only writer.
    http_client : httpx.AsyncClient
        Owned by the caller (the app lifespan closes it).
    logger : logging.Logger | None
        Defaults to ``logging.getLogger("webhook_chat")``.
    """

    def __init__(
        self,
        settings: Settings,
        limiter: RateLimiter,
        http_client: httpx.AsyncClient,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.settings = settings
        self.limiter = limiter
        self.http = http_client
        self.log = logger or logging.getLogger("webhook_chat")

    # -------------------------
    # Validation
    # -------------------------
    def check_rate(self, client_key: str) -> None:
        s = self.settings
        if not self.limiter.allow(client_key, s.rate_limit, s.rate_window_ms):
            retry_after = self.limiter.retry_after(client_key)
            self.log.warning(
                "Rate limit exceeded",
                extra={"metadata": {"client": client_key, "retry_after_s": round(retry_after, 3)}},
            )
            raise RateLimited(retry_after)

    def validate(self, raw_body: Any) -> str:
        """Return the message text or raise :class:`InvalidInput`."""
        message = raw_body.get("message") if isinstance(raw_body, dict) else None
        if not isinstance(message, str) or not message:
            raise InvalidInput(MESSAGE_REQUIRED)
        limit = self.settings.max_message_chars
        if len(message) > limit:
            raise InvalidInput(message_too_long(limit))
        return message

    # -------------------------
    # Forwarding
    # -------------------------
    async def forward(self, raw_body: Any, client_key: str) -> Any:
        """Run the full pipeline and return the normalised webhook reply.

        Raises a :class:`~webhook_chat.errors.ChatError` subclass on failure.
        """
        try:
            self.check_rate(client_key)
            message = self.validate(raw_body)
            if not self.settings.webhook_configured:
                self.log.error("Webhook URL is not configured")
                raise Misconfigured()

            self.log.info(
                "Forwarding chat message",
                extra={"metadata": {"client": client_key, "length": len(message)}},
            )
            payload = {"message": message, "timestamp": raw_body.get("timestamp")}
            return await self._post(payload)
        except ChatError:
            raise
        except Exception as e:
            self.log.exception("Unhandled error while forwarding: %s", e)
            raise InternalError() from e

    async def _post(self, payload: Dict[str, Any]) -> Any:
        try:
            resp = await self.http.post(
                str(self.settings.webhook_url),
                json=payload,
                headers={"Content-Type": "application/json"},
                timeout=self.settings.request_timeout,
            )
        except httpx.TimeoutException as e:
            self.log.error("Webhook timed out after %.1fs", self.settings.request_timeout)
            raise UpstreamError(None, detail="timeout") from e
        except httpx.HTTPError as e:
            self.log.error("Webhook request failed: %s", e)
            raise UpstreamError(None, detail=str(e)) from e

        text = resp.text
        self.log.debug(
            "Webhook responded",
            extra={"metadata": {"status": resp.status_code, "bytes": len(resp.content)}},
        )

        if not resp.is_success:
            self.log.error("Webhook returned error status %d", resp.status_code)
            raise UpstreamError(resp.status_code, detail=text[:200])

        return normalize_reply(text, self.log)


def _reject_constant(name: str) -> Any:
    # NaN and Infinity are not JSON; such bodies are treated as plain text.
    raise ValueError(f"non-standard JSON constant {name}")


def normalize_reply(text: str, log: Optional[logging.Logger] = None) -> Any:
    """Shape a successful webhook body into something the client can read.

    Empty bodies get a placeholder, JSON is passed through as-is and anything
    else is wrapped as ``{"response": text}``.
    """
    if not text or not text.strip():
        if log is not None:
            log.warning("Webhook returned an empty body")
        return {"response": EMPTY_UPSTREAM_REPLY}
    try:
        return json.loads(text, parse_constant=_reject_constant)
    except ValueError:
        if log is not None:
            log.debug("Webhook reply is not JSON, wrapping as text")
        return {"response": text}
