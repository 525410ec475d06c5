"""
Thread-safe in-memory cache for resolved secret values.

This module provides the resolution cache shared by every resolution pass in
the process. Entries never expire by eviction: staleness is computed at read
time so a stale value stays available as a last-resort fallback when a
refresh fails with a transient error.

Architecture:
    - Thread-safe with threading.Lock for concurrent access
    - In-memory only (NO disk persistence, entries refuse serialization)
    - Generation-based clear(): an atomic cutover to an empty cache
    - Coalescing of concurrent misses into one in-flight fetch per key

Security Properties:
    - Values held as pydantic SecretStr (masked in repr/str)
    - CacheEntry cannot be pickled, copied or deep-copied
    - Writes from fetches started before clear() are discarded

Example Usage:
    >>> cache = ResolutionCache()
    >>> ref = SecretReference("vault", "database/password")
    >>> cache.store(ref, "secret123", ttl=3600)
    True
    >>> cache.lookup(ref).state
    <CacheState.FRESH: 'fresh'>
    >>> cache.clear()
    >>> cache.lookup(ref).state
    <CacheState.ABSENT: 'absent'>
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import NoReturn

from pydantic import SecretStr

from libs.secrets.models import SecretReference

logger = logging.getLogger(__name__)


class CacheState(str, Enum):
    FRESH = "fresh"
    STALE = "stale"
    ABSENT = "absent"


class CacheEntry:
    """
    Cached value with its fetch time and TTL.

    There is no serialization path for this type: pickling and copying raise
    TypeError, and repr never includes the value.
    """

    __slots__ = ("_value", "fetched_at", "ttl")

    def __init__(self, value: str, fetched_at: float, ttl: float) -> None:
        self._value = SecretStr(value)
        self.fetched_at = fetched_at
        self.ttl = ttl

    @property
    def value(self) -> SecretStr:
        return self._value

    def is_fresh(self, now: float) -> bool:
        return now < self.fetched_at + self.ttl

    def __reduce__(self) -> NoReturn:
        raise TypeError("CacheEntry holds secret material and cannot be serialized")

    def __reduce_ex__(self, protocol: object) -> NoReturn:
        raise TypeError("CacheEntry holds secret material and cannot be serialized")

    def __repr__(self) -> str:
        return f"CacheEntry(value=**********, fetched_at={self.fetched_at!r}, ttl={self.ttl!r})"


@dataclass(frozen=True)
class CacheLookup:
    """Result of ResolutionCache.lookup(); staleness is advisory."""

    state: CacheState
    entry: CacheEntry | None = None

    @property
    def value(self) -> SecretStr | None:
        return self.entry.value if self.entry is not None else None


_ABSENT = CacheLookup(state=CacheState.ABSENT)


class ResolutionCache:
    """
    Thread-safe resolution cache with TTL, stale retention and coalescing.

    The orchestrator, not the cache, decides whether a stale entry is
    acceptable: lookup() reports the state and leaves the entry in place.

    Attributes:
        _entries: Current generation's entries keyed by SecretReference
        _inflight: Current generation's in-flight fetch tasks keyed by reference
        _generation: Incremented by every clear()
        _lock: Threading lock protecting all of the above

    Thread Safety:
        All public methods are thread-safe. lookup() never blocks on I/O.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        """
        Args:
            clock: Monotonic time source in seconds (injectable for tests)
        """
        self._clock = clock
        self._entries: dict[SecretReference, CacheEntry] = {}
        self._inflight: dict[SecretReference, asyncio.Task[str]] = {}
        self._generation = 0
        self._lock = threading.Lock()

    @property
    def generation(self) -> int:
        with self._lock:
            return self._generation

    def lookup(self, key: SecretReference) -> CacheLookup:
        """Return the fresh/stale/absent state of ``key`` without side effects."""
        with self._lock:
            entry = self._entries.get(key)
        if entry is None:
            return _ABSENT
        state = CacheState.FRESH if entry.is_fresh(self._clock()) else CacheState.STALE
        return CacheLookup(state=state, entry=entry)

    def store(
        self,
        key: SecretReference,
        value: str,
        ttl: float,
        generation: int | None = None,
    ) -> bool:
        """
        Store (or refresh) a value with the given TTL in seconds.

        Args:
            key: Reference identity
            value: Resolved secret value
            ttl: Time-to-live in seconds (0 stores an immediately-stale entry
                that still serves as a fallback)
            generation: Generation observed when the fetch started; the write
                is discarded if clear() ran in between

        Returns:
            True if stored, False if discarded because of a clear()
        """
        entry = CacheEntry(value, fetched_at=self._clock(), ttl=ttl)
        with self._lock:
            if generation is not None and generation != self._generation:
                logger.debug(
                    "Discarding cache write from previous generation",
                    extra={**key.log_context(), "generation": generation},
                )
                return False
            self._entries[key] = entry
            return True

    def clear(self) -> None:
        """
        Wipe all entries atomically (idempotent).

        In-flight fetches keep running for their current waiters, but they
        belong to the old generation: they are no longer joined by new
        requests and their results are not stored.
        """
        with self._lock:
            count = len(self._entries)
            self._entries = {}
            self._inflight = {}
            self._generation += 1
        logger.info("Secret resolution cache cleared", extra={"evicted": count})

    async def coalesce(
        self,
        key: SecretReference,
        fetch: Callable[[], Awaitable[str]],
        ttl: float,
    ) -> str:
        """
        Run ``fetch`` for ``key`` unless an identical fetch is already in flight.

        Concurrent callers for the same key (in the same generation and event
        loop) share one task and all observe its result or exception. The
        task stores its value on success, so a fetch whose waiters were
        cancelled by a deadline still populates the cache.

        Raises:
            Whatever ``fetch`` raises, propagated to every waiter
        """
        loop = asyncio.get_running_loop()
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry.is_fresh(self._clock()):
                return entry.value.get_secret_value()
            task = self._inflight.get(key)
            if task is None or task.done() or task.get_loop() is not loop:
                generation = self._generation
                task = loop.create_task(self._fetch_and_store(key, fetch, ttl, generation))
                self._inflight[key] = task
                task.add_done_callback(lambda done: self._finish(key, done))
            else:
                logger.debug("Joining in-flight secret fetch", extra=key.log_context())
        return await asyncio.shield(task)

    async def _fetch_and_store(
        self,
        key: SecretReference,
        fetch: Callable[[], Awaitable[str]],
        ttl: float,
        generation: int,
    ) -> str:
        value = await fetch()
        self.store(key, value, ttl, generation=generation)
        return value

    def _finish(self, key: SecretReference, task: asyncio.Task[str]) -> None:
        with self._lock:
            if self._inflight.get(key) is task:
                del self._inflight[key]
        # Mark the exception retrieved; every waiter got its own copy already.
        if not task.cancelled():
            task.exception()

    def __len__(self) -> int:
        """Number of entries (fresh and stale) in the current generation."""
        with self._lock:
            return len(self._entries)
