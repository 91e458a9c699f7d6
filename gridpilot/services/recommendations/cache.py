"""In-memory recommendation cache with per-key lifecycle.

Each key moves through ``empty -> computing -> populated`` and back to
``empty`` on expiry or invalidation. The store holds the in-flight
registry used to coalesce concurrent requests and a generation token per
key. Invalidation bumps the token, so a computation that started earlier
can still answer its waiters but can no longer populate the key.

All methods are synchronous. Callers on one event loop get atomic
check-and-insert simply by not awaiting between ``inflight`` and ``begin``.
"""

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import structlog

from gridpilot.errors import CacheCorruption

logger = structlog.get_logger(__name__)


class CacheState(str, Enum):
    EMPTY = "empty"
    COMPUTING = "computing"
    POPULATED = "populated"
    EXPIRED = "expired"


@dataclass(frozen=True)
class CacheKey:
    """(driver id, filter hash)."""

    driver_id: str
    filter_hash: str

    def __str__(self) -> str:
        return f"{self.driver_id}:{self.filter_hash}"


@dataclass(frozen=True)
class CacheEntry:
    value: Any
    created_at: float
    generation: int


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    coalesced: int = 0
    evictions: int = 0
    invalidations: int = 0
    computations: int = 0
    failures: int = 0
    discarded: int = 0

    @property
    def total_requests(self) -> int:
        return self.hits + self.misses + self.coalesced

    @property
    def hit_rate(self) -> float:
        total = self.total_requests
        return self.hits / total if total else 0.0


@dataclass
class _InFlight:
    future: asyncio.Future
    generation: int
    started_at: float = field(default=0.0)


class CacheStore:
    """
    Recommendation cache shared by every request in the process.

    Args:
        ttl_seconds: Age at which a populated entry stops being served
        clock: Monotonic time source, injectable for tests
    """

    def __init__(self, ttl_seconds: float = 900.0, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._entries: dict[CacheKey, CacheEntry] = {}
        self._inflight: dict[CacheKey, _InFlight] = {}
        self._generations: dict[CacheKey, int] = {}
        self.stats = CacheStats()

    def __len__(self) -> int:
        return len(self._entries)

    def generation(self, key: CacheKey) -> int:
        return self._generations.get(key, 0)

    def _is_fresh(self, entry: CacheEntry) -> bool:
        return self.clock() - entry.created_at < self.ttl_seconds

    def state(self, key: CacheKey) -> CacheState:
        if key in self._inflight:
            return CacheState.COMPUTING
        entry = self._entries.get(key)
        if entry is None:
            return CacheState.EMPTY
        return CacheState.POPULATED if self._is_fresh(entry) else CacheState.EXPIRED

    def get(self, key: CacheKey) -> CacheEntry | None:
        """
        Fresh entry for key, or None.

        An entry at or beyond the TTL is evicted on sight.

        Raises:
            CacheCorruption: entry carries a generation newer than the key's
        """
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.generation > self.generation(key):
            raise CacheCorruption(str(key), "entry generation ahead of key generation")
        if not self._is_fresh(entry):
            del self._entries[key]
            self.stats.evictions += 1
            return None
        return entry

    def inflight(self, key: CacheKey) -> asyncio.Future | None:
        """
        Future of the computation running for key, if any.

        Raises:
            CacheCorruption: a finished computation was never deregistered
        """
        running = self._inflight.get(key)
        if running is None:
            return None
        if running.future.done():
            raise CacheCorruption(str(key), "computing with no pending computation")
        return running.future

    def begin(self, key: CacheKey) -> tuple[asyncio.Future, int]:
        """
        Register a new computation for key (``empty -> computing``).

        Returns the future waiters attach to and the generation the
        computation must present when it completes.
        """
        if key in self._inflight:
            raise CacheCorruption(str(key), "computation already registered")
        future = asyncio.get_running_loop().create_future()
        generation = self.generation(key)
        self._inflight[key] = _InFlight(future=future, generation=generation, started_at=self.clock())
        self.stats.computations += 1
        return future, generation

    def _release(self, key: CacheKey, future: asyncio.Future) -> None:
        running = self._inflight.get(key)
        if running is not None and running.future is future:
            del self._inflight[key]

    def complete(self, key: CacheKey, future: asyncio.Future, generation: int, value: Any) -> bool:
        """
        Resolve a computation and populate the key if still current.

        Returns:
            True if the value was stored
        """
        self._release(key, future)
        if not future.done():
            future.set_result(value)

        if generation != self.generation(key):
            self.stats.discarded += 1
            logger.info("cache_result_discarded", key=str(key), generation=generation)
            return False

        self._entries[key] = CacheEntry(value=value, created_at=self.clock(), generation=generation)
        return True

    def fail(self, key: CacheKey, future: asyncio.Future, error: BaseException) -> None:
        """Fail every waiter and leave the key empty."""
        self._release(key, future)
        self._entries.pop(key, None)
        self.stats.failures += 1
        if not future.done():
            future.set_exception(error)
            # Failure is logged by the caller; mark it retrieved for waiter-less runs
            future.exception()

    def abandon(self, key: CacheKey, future: asyncio.Future) -> None:
        """Deregister a computation that was cancelled before finishing."""
        self._release(key, future)
        if not future.done():
            future.cancel()

    def reset(self, key: CacheKey) -> None:
        """Force key back to empty after corruption."""
        self._inflight.pop(key, None)
        self._entries.pop(key, None)
        self._generations[key] = self.generation(key) + 1

    def invalidate(self, match: Callable[[CacheKey, CacheEntry | None], bool]) -> int:
        """
        Drop matching entries and bump their generation.

        In-flight keys without an entry are offered to ``match`` with None.

        Returns:
            Number of stored entries dropped
        """
        dropped = 0
        for key in list(self._entries):
            if match(key, self._entries[key]):
                del self._entries[key]
                self._generations[key] = self.generation(key) + 1
                dropped += 1
        for key in list(self._inflight):
            if key not in self._entries and match(key, None):
                self._generations[key] = self.generation(key) + 1
        self.stats.invalidations += dropped
        return dropped

    def purge_expired(self) -> int:
        """Evict every entry at or past the TTL."""
        expired = [k for k, e in self._entries.items() if not self._is_fresh(e)]
        for key in expired:
            del self._entries[key]
        # Generations only matter while a key has an entry or a computation
        for key in list(self._generations):
            if key not in self._entries and key not in self._inflight:
                del self._generations[key]
        self.stats.evictions += len(expired)
        return len(expired)

    def clear(self) -> None:
        """Drop every entry and reset statistics; running computations are orphaned."""
        for key in set(self._entries) | set(self._inflight):
            self._generations[key] = self.generation(key) + 1
        self._entries.clear()
        self.stats = CacheStats()

    def keys(self) -> list[CacheKey]:
        return list(self._entries)

    def metrics(self) -> dict[str, Any]:
        s = self.stats
        return {
            "size": len(self._entries),
            "in_flight": len(self._inflight),
            "ttl_seconds": self.ttl_seconds,
            "stats": {
                "hits": s.hits,
                "misses": s.misses,
                "coalesced": s.coalesced,
                "total_requests": s.total_requests,
                "hit_rate": round(s.hit_rate, 4),
                "evictions": s.evictions,
                "invalidations": s.invalidations,
                "computations": s.computations,
                "failures": s.failures,
                "discarded": s.discarded,
            },
        }
