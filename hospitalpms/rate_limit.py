"""
Per-user rate limiting for sensitive operations.

Each user gets a fixed window: the first request opens a window of
``window_seconds`` with a count of one, later requests increment the count
until ``max_attempts`` is reached, and further requests are refused until
the window expires.

State lives behind the ``RateLimitStore`` protocol.  ``InMemoryRateLimitStore``
is per-process: with several application instances each one counts on its
own, so the effective limit is multiplied by the instance count.  Use a
shared store (for example a cache server) where a global limit is required.

Expired entries are swept from the store lazily, at most once per
``sweep_interval_seconds``, from inside ``check``.

Concurrent requests from the same user may race on the increment; the
counter is approximate by nature, which is acceptable for abuse mitigation.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Iterator, Optional, Protocol

import structlog

from hospitalpms.config import RateLimitSettings, get_rate_limit_settings

logger = structlog.get_logger(__name__)


@dataclass
class RateLimitEntry:
    count: int
    reset_at: float


class RateLimitStore(Protocol):
    """Storage backend for rate limit windows, keyed by user ID."""

    def get(self, key: str) -> Optional[RateLimitEntry]: ...

    def set(self, key: str, entry: RateLimitEntry) -> None: ...

    def delete(self, key: str) -> None: ...

    def items(self) -> Iterator[tuple[str, RateLimitEntry]]: ...


class InMemoryRateLimitStore:
    """Process-local store."""

    def __init__(self) -> None:
        self._entries: dict[str, RateLimitEntry] = {}

    def get(self, key: str) -> Optional[RateLimitEntry]:
        return self._entries.get(key)

    def set(self, key: str, entry: RateLimitEntry) -> None:
        self._entries[key] = entry

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def items(self) -> Iterator[tuple[str, RateLimitEntry]]:
        return iter(list(self._entries.items()))

    def __len__(self) -> int:
        return len(self._entries)


class RateLimiter:
    """Fixed-window request counter.

    Args:
        store: Backend holding the per-user windows.
        max_attempts: Requests allowed per window.
        window_seconds: Window length.
        sweep_interval_seconds: Minimum time between sweeps of expired
            entries.
        clock: Monotonic time source, in seconds.
    """

    def __init__(
        self,
        store: Optional[RateLimitStore] = None,
        max_attempts: int = 10,
        window_seconds: float = 60.0,
        sweep_interval_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_attempts <= 0:
            raise ValueError(f"max_attempts must be > 0, got {max_attempts}")
        if window_seconds <= 0:
            raise ValueError(f"window_seconds must be > 0, got {window_seconds}")
        self._store = store if store is not None else InMemoryRateLimitStore()
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self._clock = clock
        self._last_sweep = clock()

    @classmethod
    def from_settings(
        cls,
        settings: Optional[RateLimitSettings] = None,
        store: Optional[RateLimitStore] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> "RateLimiter":
        """Build a limiter from settings, by default the ones in the environment."""
        if settings is None:
            settings = get_rate_limit_settings()
        return cls(
            store=store,
            max_attempts=settings.max_attempts,
            window_seconds=settings.window_seconds,
            sweep_interval_seconds=settings.sweep_interval_seconds,
            clock=clock,
        )

    def check(self, user_id: str) -> bool:
        """Count one request for ``user_id``; return False if over the limit."""
        now = self._clock()
        self._maybe_sweep(now)

        entry = self._store.get(user_id)
        if entry is None or entry.reset_at < now:
            self._store.set(user_id, RateLimitEntry(count=1, reset_at=now + self.window_seconds))
            return True

        if entry.count >= self.max_attempts:
            logger.info("rate_limit_exceeded", user_id=user_id, max_attempts=self.max_attempts)
            return False

        entry.count += 1
        self._store.set(user_id, entry)
        return True

    def remaining(self, user_id: str) -> int:
        """Requests left in the user's current window."""
        entry = self._store.get(user_id)
        if entry is None or entry.reset_at < self._clock():
            return self.max_attempts
        return max(self.max_attempts - entry.count, 0)

    def reset(self, user_id: str) -> None:
        self._store.delete(user_id)

    def sweep_expired(self) -> int:
        """Delete every expired window.  Returns the number removed."""
        now = self._clock()
        self._last_sweep = now
        removed = 0
        for key, entry in self._store.items():
            if entry.reset_at < now:
                self._store.delete(key)
                removed += 1
        if removed:
            logger.debug("rate_limit_swept", removed=removed)
        return removed

    def _maybe_sweep(self, now: float) -> None:
        if now - self._last_sweep >= self.sweep_interval_seconds:
            self.sweep_expired()
