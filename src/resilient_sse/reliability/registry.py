"""Registry of named circuit breakers with TTL-based eviction.

Unrelated call sites that talk to the same remote dependency share failure
state by asking the registry for the same name. Each entry carries an
eviction timer that is restarted on every access, so breakers for names
that stop being used disappear on their own.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any

import structlog

from resilient_sse.reliability.circuit_breaker import CircuitBreaker

logger = structlog.get_logger(__name__)

DEFAULT_BREAKER_TTL_MS = 5 * 60 * 1000


@dataclass
class _BreakerEntry:
    breaker: CircuitBreaker
    last_access: float
    cleanup: asyncio.TimerHandle | None


class CircuitBreakerRegistry:
    """Process-scoped registry of shared circuit breakers.

    Construct one per application (or per test) and pass it to the call
    sites that need it. :meth:`clear` tears every entry down.

    Example:
        >>> registry = CircuitBreakerRegistry(ttl_ms=60_000)
        >>> breaker = registry.get_or_create("api-stream", failure_threshold=3)
        >>> registry.get_or_create("api-stream") is breaker
        True
    """

    def __init__(self, ttl_ms: int = DEFAULT_BREAKER_TTL_MS) -> None:
        """Initialize the registry.

        Args:
            ttl_ms: Default inactivity window before an entry is evicted.
        """
        self._ttl_ms = ttl_ms
        self._entries: dict[str, _BreakerEntry] = {}

    def get_or_create(
        self,
        name: str,
        *,
        ttl_ms: int | None = None,
        **options: Any,
    ) -> CircuitBreaker:
        """Return the breaker registered under ``name``, creating it if needed.

        Every call restarts the entry's eviction timer. ``options`` are
        passed to :class:`CircuitBreaker` only when the breaker is created.

        Args:
            name: Shared breaker name.
            ttl_ms: Inactivity window for this entry; defaults to the
                registry's.
            **options: Keyword arguments for a newly created breaker.

        Returns:
            The shared CircuitBreaker instance.
        """
        effective_ttl = self._ttl_ms if ttl_ms is None else ttl_ms
        entry = self._entries.get(name)

        if entry is not None:
            entry.last_access = time.monotonic()
            if entry.cleanup is not None:
                entry.cleanup.cancel()
            entry.cleanup = self._schedule_cleanup(name, effective_ttl)
            return entry.breaker

        breaker = CircuitBreaker(name, **options)
        self._entries[name] = _BreakerEntry(
            breaker=breaker,
            last_access=time.monotonic(),
            cleanup=self._schedule_cleanup(name, effective_ttl),
        )
        logger.debug("breaker_registered", circuit=name, ttl_ms=effective_ttl)
        return breaker

    def get(self, name: str) -> CircuitBreaker | None:
        """Look up a breaker without touching its eviction timer."""
        entry = self._entries.get(name)
        return entry.breaker if entry is not None else None

    def reset(self, name: str) -> None:
        """Reset the named breaker to CLOSED, if registered."""
        entry = self._entries.get(name)
        if entry is not None:
            entry.breaker.reset()

    def remove(self, name: str) -> None:
        """Remove the named breaker immediately."""
        entry = self._entries.pop(name, None)
        if entry is not None:
            self._dispose(entry)

    def clear(self) -> None:
        """Remove every breaker and cancel all timers."""
        for entry in self._entries.values():
            self._dispose(entry)
        self._entries.clear()

    @property
    def count(self) -> int:
        """Number of registered breakers."""
        return len(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, name: object) -> bool:
        return name in self._entries

    def _schedule_cleanup(self, name: str, ttl_ms: int) -> asyncio.TimerHandle:
        loop = asyncio.get_running_loop()
        return loop.call_later(ttl_ms / 1000, self._evict, name)

    def _evict(self, name: str) -> None:
        entry = self._entries.pop(name, None)
        if entry is not None:
            entry.cleanup = None
            entry.breaker.close()
            logger.debug("breaker_evicted", circuit=name)

    @staticmethod
    def _dispose(entry: _BreakerEntry) -> None:
        if entry.cleanup is not None:
            entry.cleanup.cancel()
            entry.cleanup = None
        entry.breaker.close()


__all__ = ["DEFAULT_BREAKER_TTL_MS", "CircuitBreakerRegistry"]
