"""
Async result cache with TTL expiry and in-flight request deduplication.

Guarantees:
- at most one computation per key is running at any time; every caller
  that asks for the key meanwhile awaits the same task and gets the same
  value or the same exception
- a caller cancelling its await does not cancel the shared computation
- an entry is never returned at or after inserted_at + ttl, even when the
  recomputation fails
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable
from urllib.parse import quote

from .config import (
    CACHE_MAX_ENTRIES,
    CACHE_TTL_SECONDS,
    CIRCUIT_FAILURE_THRESHOLD,
    CIRCUIT_OPEN_SECONDS,
    DEDUP_WINDOW_SECONDS,
)
from .errors import CatalogUnavailableError, CircuitOpenError, ProfileStoreError

logger = logging.getLogger(__name__)

# Only outages of the backing stores count toward opening a circuit
INFRASTRUCTURE_ERRORS = (CatalogUnavailableError, ProfileStoreError)


def _json_default(value: Any):
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    return str(value)


@dataclass(frozen=True)
class CacheKey:
    """
    Structured cache key: namespace, user and a canonical JSON of parameters.

    The user id is percent-encoded when serialized so that one user's
    prefix can never match another user's keys.
    """

    namespace: str
    user_id: str
    params: str = "{}"

    @classmethod
    def create(cls, namespace: str, user_id: str, params: dict | None = None) -> "CacheKey":
        canonical = json.dumps(params or {}, sort_keys=True, separators=(",", ":"), default=_json_default)
        return cls(namespace, str(user_id), canonical)

    @staticmethod
    def user_prefix(namespace: str, user_id: str) -> str:
        return f"{namespace}:{quote(str(user_id), safe='')}:"

    def serialize(self) -> str:
        return f"{self.user_prefix(self.namespace, self.user_id)}{self.params}"


@dataclass
class CacheEntry:
    key: CacheKey
    value: Any
    inserted_at: float
    ttl: float

    def is_fresh(self, now: float) -> bool:
        return now < self.inserted_at + self.ttl


@dataclass
class _InFlight:
    key: CacheKey
    task: asyncio.Task
    started_at: float
    invalidated: bool = False


@dataclass
class _FailureRecord:
    key: CacheKey
    error: BaseException
    failed_at: float


@dataclass
class _Circuit:
    failures: int = 0
    opened_at: float | None = None


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    computations: int = 0
    failures: int = 0
    shared_waits: int = 0
    evictions: int = 0


class ResultCache:
    """
    TTL cache whose misses are computed by an async callable.

    The deduplication window applies to failures: callers arriving within
    `deduplication_window` seconds after a computation failed receive that
    same error instead of starting another computation. Successful values
    are governed by the TTL alone.

    At most `max_entries` values are kept; inserting beyond that evicts the
    least recently used entry.

    A per-namespace circuit breaker opens after `failure_threshold`
    consecutive infrastructure failures (catalog or profile store
    unavailable); other errors only affect the key that raised them. while open, misses raise
    CircuitOpenError (fresh hits are still served). After `open_seconds`
    one trial computation is let through.
    """

    def __init__(
        self,
        ttl: float = CACHE_TTL_SECONDS,
        deduplication_window: float = DEDUP_WINDOW_SECONDS,
        failure_threshold: int = CIRCUIT_FAILURE_THRESHOLD,
        open_seconds: float = CIRCUIT_OPEN_SECONDS,
        max_entries: int = CACHE_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl = ttl
        self.deduplication_window = deduplication_window
        self.failure_threshold = failure_threshold
        self.open_seconds = open_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._inflight: dict[str, _InFlight] = {}
        self._failures: dict[str, _FailureRecord] = {}
        self._circuits: dict[str, _Circuit] = {}
        self._stats = CacheStats()
        self._sweeper: asyncio.Task | None = None

    async def get(
        self,
        key: CacheKey,
        compute_fn: Callable[[], Awaitable[Any]],
        ttl: float | None = None,
        deduplication_window: float | None = None,
    ) -> Any:
        ttl = self.ttl if ttl is None else ttl
        window = self.deduplication_window if deduplication_window is None else deduplication_window
        k = key.serialize()
        now = self._clock()

        entry = self._entries.get(k)
        if entry is not None:
            if entry.is_fresh(now):
                self._stats.hits += 1
                self._entries.move_to_end(k)
                return entry.value
            del self._entries[k]

        self._stats.misses += 1

        inflight = self._inflight.get(k)
        if inflight is not None:
            self._stats.shared_waits += 1
            return await asyncio.shield(inflight.task)

        failure = self._failures.get(k)
        if failure is not None:
            if now - failure.failed_at < window:
                raise failure.error
            del self._failures[k]

        self._check_circuit(key.namespace, now)

        task = asyncio.ensure_future(self._compute(k, key, compute_fn, ttl))
        task.add_done_callback(_consume_exception)
        self._inflight[k] = _InFlight(key, task, now)
        return await asyncio.shield(task)

    async def _compute(self, k: str, key: CacheKey, compute_fn, ttl: float) -> Any:
        self._stats.computations += 1
        try:
            value = await compute_fn()
        except Exception as exc:
            self._stats.failures += 1
            self._record_failure(k, key, exc, share=self._owns(k))
            raise
        else:
            if self._owns(k) and ttl > 0:
                self._store(k, CacheEntry(key, value, self._clock(), ttl))
            self._circuit(key.namespace).failures = 0
            self._circuit(key.namespace).opened_at = None
            return value
        finally:
            record = self._inflight.get(k)
            if record is not None and record.task is asyncio.current_task():
                del self._inflight[k]

    def _store(self, k: str, entry: CacheEntry) -> None:
        self._entries[k] = entry
        self._entries.move_to_end(k)
        while len(self._entries) > self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            self._stats.evictions += 1
            logger.debug(f"Evicted least recently used cache entry {evicted}")

    def _circuit(self, namespace: str) -> _Circuit:
        return self._circuits.setdefault(namespace, _Circuit())

    def _check_circuit(self, namespace: str, now: float) -> None:
        circuit = self._circuits.get(namespace)
        if circuit is None or circuit.opened_at is None:
            return
        if now - circuit.opened_at < self.open_seconds:
            raise CircuitOpenError(f"Circuit open for '{namespace}' after {circuit.failures} failures")
        # Half-open: let this computation through as a trial
        logger.info(f"Circuit half-open for '{namespace}', allowing a trial computation")

    def _owns(self, k: str) -> bool:
        """True while the current task is still the registered, non-invalidated computation for k."""
        record = self._inflight.get(k)
        return record is not None and not record.invalidated and record.task is asyncio.current_task()

    def _record_failure(self, k: str, key: CacheKey, exc: BaseException, share: bool = True) -> None:
        now = self._clock()
        if share:
            self._failures[k] = _FailureRecord(key, exc, now)
        if not isinstance(exc, INFRASTRUCTURE_ERRORS):
            return
        circuit = self._circuit(key.namespace)
        circuit.failures += 1
        if circuit.failures >= self.failure_threshold:
            if circuit.opened_at is None:
                logger.warning(f"Circuit opened for '{key.namespace}' after {circuit.failures} consecutive failures")
            circuit.opened_at = now

    def invalidate(self, prefix: str) -> int:
        """Drop entries, pending failures and in-flight results whose serialized key starts with prefix."""
        removed = [k for k in self._entries if k.startswith(prefix)]
        for k in removed:
            del self._entries[k]
        for k in [k for k in self._failures if k.startswith(prefix)]:
            del self._failures[k]
        for k in [k for k in self._inflight if k.startswith(prefix)]:
            # Current waiters still get the result; later callers recompute
            self._inflight.pop(k).invalidated = True
        if removed:
            logger.debug(f"Invalidated {len(removed)} cache entries with prefix {prefix!r}")
        return len(removed)

    def invalidate_user(self, user_id: str) -> int:
        """Drop everything cached for a user across all namespaces."""
        namespaces = {e.key.namespace for e in self._entries.values()}
        namespaces |= {r.key.namespace for r in self._inflight.values()}
        namespaces |= {f.key.namespace for f in self._failures.values()}
        return sum(self.invalidate(CacheKey.user_prefix(ns, user_id)) for ns in namespaces)

    def sweep(self) -> int:
        now = self._clock()
        expired = [k for k, e in self._entries.items() if not e.is_fresh(now)]
        for k in expired:
            del self._entries[k]
        stale_failures = [k for k, f in self._failures.items() if now - f.failed_at >= self.deduplication_window]
        for k in stale_failures:
            del self._failures[k]
        if expired:
            logger.debug(f"Swept {len(expired)} expired cache entries")
        return len(expired)

    def start_sweeper(self, interval: float) -> asyncio.Task:
        async def _loop():
            while True:
                await asyncio.sleep(interval)
                self.sweep()

        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.ensure_future(_loop())
        return self._sweeper

    async def aclose(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None

    def clear(self) -> None:
        self._entries.clear()
        self._failures.clear()
        for record in self._inflight.values():
            record.invalidated = True
        self._inflight.clear()

    def stats(self) -> dict[str, int]:
        return {
            "entries": len(self._entries),
            "in_flight": len(self._inflight),
            "hits": self._stats.hits,
            "misses": self._stats.misses,
            "computations": self._stats.computations,
            "failures": self._stats.failures,
            "shared_waits": self._stats.shared_waits,
            "evictions": self._stats.evictions,
            "open_circuits": sum(1 for c in self._circuits.values() if c.opened_at is not None),
        }


def _consume_exception(task: asyncio.Task) -> None:
    # Every waiter may have been cancelled; retrieve the exception so asyncio doesn't warn
    if not task.cancelled():
        task.exception()
