"""Fixed-window, per-key request limiter (in-process, thread-safe).

Each key gets one :class:`RateLimitRecord`. The first request opens a window
of ``window_ms``; up to ``limit`` requests pass inside it and the rest are
denied until the window's reset time. Expired records are replaced lazily on
the next request and physically removed only by :meth:`RateLimiter.sweep`.

Because windows are fixed rather than sliding, a client can get up to
``2 * limit`` requests through in a short burst straddling a window boundary.
That is an accepted characteristic of the algorithm.

State is local to the process: several server instances each enforce their
own independent limit.
"""
from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Mapping, Optional, Protocol, Tuple

UNKNOWN_CLIENT = "unknown"

Clock = Callable[[], float]


def _now_ms() -> float:
    return time.time() * 1000.0


@dataclass
class RateLimitRecord:
    count: int
    reset_time: float  # epoch milliseconds

    def expired(self, now: float) -> bool:
        return now > self.reset_time


class RateLimitStore(Protocol):
    """Minimal mapping interface so a shared backend can replace the dict."""

    def get(self, key: str) -> Optional[RateLimitRecord]: ...

    def set(self, key: str, record: RateLimitRecord) -> None: ...

    def delete(self, key: str) -> None: ...

    def items(self) -> Iterable[Tuple[str, RateLimitRecord]]: ...


class InMemoryRateLimitStore:
    """Plain dict store. Locking is done by :class:`RateLimiter`."""

    def __init__(self) -> None:
        self._records: Dict[str, RateLimitRecord] = {}

    def get(self, key: str) -> Optional[RateLimitRecord]:
        return self._records.get(key)

    def set(self, key: str, record: RateLimitRecord) -> None:
        self._records[key] = record

    def delete(self, key: str) -> None:
        self._records.pop(key, None)

    def items(self) -> Iterable[Tuple[str, RateLimitRecord]]:
        return list(self._records.items())

    def __len__(self) -> int:
        return len(self._records)


class RateLimiter:
    """Per-key fixed-window counter.

    Parameters
    ----------
    store : RateLimitStore | None
        Backing store; defaults to :class:`InMemoryRateLimitStore`.
    clock : Callable[[], float] | None
        Returns the current time in milliseconds. Tests inject a fake.
    """

    def __init__(self, store: Optional[RateLimitStore] = None, clock: Optional[Clock] = None) -> None:
        self.store: RateLimitStore = store if store is not None else InMemoryRateLimitStore()
        self.clock: Clock = clock or _now_ms
        self._lock = threading.Lock()

    def allow(self, key: str, limit: int, window_ms: int) -> bool:
        """Count one request for ``key``; return False if it must be rejected.

        A denied request leaves the record untouched.
        """
        if limit < 1:
            raise ValueError("limit must be >= 1")
        if window_ms < 1:
            raise ValueError("window_ms must be >= 1")

        with self._lock:
            now = self.clock()
            record = self.store.get(key)
            if record is None or record.expired(now):
                self.store.set(key, RateLimitRecord(count=1, reset_time=now + window_ms))
                return True
            if record.count < limit:
                record.count += 1
                self.store.set(key, record)
                return True
            return False

    def retry_after(self, key: str) -> float:
        """Seconds until ``key``'s current window resets (0 when none is open)."""
        with self._lock:
            now = self.clock()
            record = self.store.get(key)
            if record is None or record.expired(now):
                return 0.0
            return (record.reset_time - now) / 1000.0

    def sweep(self) -> int:
        """Drop records whose window has passed; returns how many were removed."""
        removed = 0
        with self._lock:
            now = self.clock()
            for key, record in self.store.items():
                if record.expired(now):
                    self.store.delete(key)
                    removed += 1
        return removed


def client_key(
    headers: Mapping[str, str],
    peer: Optional[str] = None,
    *,
    trust_forwarded_for: bool = True,
) -> str:
    """Derive the rate-limit identity for a request.

    With ``trust_forwarded_for`` the client-supplied ``X-Forwarded-For`` (first
    hop) or ``X-Real-IP`` header wins over the socket peer. Those headers can be
    forged by any client, so deployments not sitting behind a proxy that
    rewrites them should turn the flag off.
    """
    headers = {k.lower(): v for k, v in headers.items()}
    if trust_forwarded_for:
        forwarded = headers.get("x-forwarded-for")
        if forwarded:
            first = forwarded.split(",")[0].strip()
            if first:
                return first
        real_ip = (headers.get("x-real-ip") or "").strip()
        if real_ip:
            return real_ip
    if peer:
        return peer
    return UNKNOWN_CLIENT
