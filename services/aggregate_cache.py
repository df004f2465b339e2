"""Bounded, time-boxed memoization for aggregate queries.

Entries are keyed by ``CacheKey(namespace, name)``. Every project gets its own
namespace so a write to one project drops only that project's keys (plus the
global ones, which summarise every project). Eviction is least-recently-used
and bounded by both an entry count and an approximate memory ceiling.

Concurrent misses on the same key share a single in-flight computation. Each
namespace carries a generation counter that invalidation bumps; a computation
that started before an invalidation still answers its waiters but is never
stored, so a read that follows a committed write cannot see a stale value.
"""
from __future__ import annotations

import json
import logging
import sys
import threading
import time
from collections import OrderedDict
from concurrent.futures import Future, TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Any, Callable, Hashable, Mapping, Optional

from services.errors import CacheComputeFailure, CacheComputeTimeout

logger = logging.getLogger(__name__)

GLOBAL_NAMESPACE = "global"


@dataclass(frozen=True)
class CacheKey:
    namespace: Hashable
    name: str

    def __str__(self) -> str:
        if isinstance(self.namespace, tuple):
            prefix = ":".join(str(part) for part in self.namespace)
        else:
            prefix = str(self.namespace)
        return f"{prefix}:{self.name}"


def project_namespace(project_id: int) -> tuple[str, int]:
    return ("project", int(project_id))


def project_key(project_id: int, name: str) -> CacheKey:
    """Return a key whose lifetime is tied to a single project."""
    return CacheKey(project_namespace(project_id), name)


def global_key(name: str) -> CacheKey:
    """Return a key for an aggregate spanning every project."""
    return CacheKey(GLOBAL_NAMESPACE, name)


@dataclass(frozen=True)
class CacheConfig:
    max_entries: int = 100
    max_memory_bytes: int = 50 * 1024 * 1024
    default_ttl_ms: int = 60_000

    def __post_init__(self):
        for option in ("max_entries", "max_memory_bytes", "default_ttl_ms"):
            value = getattr(self, option)
            if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
                raise ValueError(f"{option} must be a positive integer, got {value!r}")

    @classmethod
    def from_mapping(cls, options: Mapping[str, Any]) -> "CacheConfig":
        """Build a config from a plain mapping, rejecting unknown options."""

        known = {"max_entries", "max_memory_bytes", "default_ttl_ms"}
        unknown = set(options) - known
        if unknown:
            raise ValueError(f"Unknown cache option(s): {', '.join(sorted(unknown))}")
        return cls(**{name: int(value) for name, value in options.items()})


@dataclass(frozen=True)
class CacheStats:
    entries: int
    memory_bytes: int
    max_entries: int
    max_memory_bytes: int
    hits: int
    misses: int
    evictions: int
    in_flight: int

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0


@dataclass
class _Entry:
    value: Any
    stored_at: float
    size: int


@dataclass
class _Flight:
    generation: tuple[int, int]
    future: Future = field(default_factory=Future)
    detached: bool = False
    waiters: int = 0
    abandoned: bool = False


def estimate_size(key: CacheKey, value: Any) -> int:
    """Rough byte cost of an entry: UTF-16 length of the key and JSON value."""

    try:
        payload = json.dumps(value, default=str)
    except (TypeError, ValueError):
        return sys.getsizeof(value) + len(str(key)) * 2
    return (len(str(key)) + len(payload)) * 2


class AggregateCache:
    """LRU + TTL cache with single-flight computation and scoped invalidation."""

    def __init__(
        self,
        config: Optional[CacheConfig] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._config = config or CacheConfig()
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: "OrderedDict[CacheKey, _Entry]" = OrderedDict()
        self._namespaces: dict[Hashable, set[CacheKey]] = {}
        self._generations: dict[Hashable, int] = {}
        self._epoch = 0
        self._inflight: dict[CacheKey, _Flight] = {}
        self._memory = 0
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    @property
    def config(self) -> CacheConfig:
        return self._config

    def get_or_compute(
        self,
        key: CacheKey,
        compute_fn: Callable[[], Any],
        ttl_seconds: Optional[float] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """Return the cached value for ``key`` or compute, store and return it.

        ``ttl_seconds`` overrides the configured ``default_ttl_ms`` for this call.
        Without a ``timeout`` the calling thread runs ``compute_fn`` itself;
        with one, the computation runs on a helper thread and the caller waits
        at most ``timeout`` seconds before ``CacheComputeTimeout`` is raised.
        A timeout only gives up on the computation once no other caller is
        still waiting for it; until then it stays shared and its result is
        stored as usual.
        Failures of ``compute_fn`` are raised as ``CacheComputeFailure`` and
        are never cached.
        """

        if ttl_seconds is None:
            ttl_seconds = self._config.default_ttl_ms / 1000.0
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None:
                if self._clock() - entry.stored_at < ttl_seconds:
                    self._entries.move_to_end(key)
                    self._hits += 1
                    return entry.value
                self._discard(key)
            self._misses += 1
            flight = self._inflight.get(key)
            leader = flight is None
            if leader:
                flight = _Flight(
                    generation=self._generation(key.namespace),
                    detached=timeout is not None,
                )
                self._inflight[key] = flight
            flight.waiters += 1

        if leader:
            if timeout is None:
                self._run(key, flight, compute_fn)
            else:
                worker = threading.Thread(
                    target=self._run,
                    args=(key, flight, compute_fn),
                    name=f"aggregate-cache:{key}",
                    daemon=True,
                )
                worker.start()
        return self._wait(key, flight, timeout)

    def invalidate(self, key: CacheKey) -> bool:
        """Drop a single key. Returns True when an entry was removed."""

        with self._lock:
            self._generations[key.namespace] = self._generations.get(key.namespace, 0) + 1
            return self._discard(key)

    def invalidate_project(self, project_id: int) -> int:
        """Drop every key scoped to the project, and every global key."""

        return self._invalidate_namespaces((project_namespace(project_id), GLOBAL_NAMESPACE))

    def invalidate_global(self) -> int:
        return self._invalidate_namespaces((GLOBAL_NAMESPACE,))

    def clear(self) -> None:
        with self._lock:
            self._epoch += 1
            self._entries.clear()
            self._namespaces.clear()
            self._memory = 0
        logger.debug("Aggregate cache cleared")

    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(
                entries=len(self._entries),
                memory_bytes=self._memory,
                max_entries=self._config.max_entries,
                max_memory_bytes=self._config.max_memory_bytes,
                hits=self._hits,
                misses=self._misses,
                evictions=self._evictions,
                in_flight=len(self._inflight),
            )

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    # Internal helpers -- callers must hold self._lock unless noted.

    def _generation(self, namespace: Hashable) -> tuple[int, int]:
        return (self._epoch, self._generations.get(namespace, 0))

    def _run(self, key: CacheKey, flight: _Flight, compute_fn: Callable[[], Any]) -> None:
        # Runs without the lock held; it may be on a helper thread.
        try:
            value = compute_fn()
        except Exception as exc:
            with self._lock:
                if self._inflight.get(key) is flight:
                    del self._inflight[key]
            logger.warning("Aggregate %s failed to compute: %s", key, exc)
            failure = CacheComputeFailure(f"Computing {key} failed: {exc}", key=key)
            failure.__cause__ = exc
            flight.future.set_exception(failure)
            return
        except BaseException as exc:
            with self._lock:
                if self._inflight.get(key) is flight:
                    del self._inflight[key]
            flight.future.set_exception(exc)
            raise

        with self._lock:
            if self._inflight.get(key) is flight:
                del self._inflight[key]
            if flight.abandoned:
                logger.debug("Discarding late result for %s", key)
            elif flight.generation != self._generation(key.namespace):
                logger.debug("Discarding result for %s computed before invalidation", key)
            else:
                self._store(key, value)
        flight.future.set_result(value)

    def _wait(self, key: CacheKey, flight: _Flight, timeout: Optional[float]) -> Any:
        try:
            return flight.future.result(timeout=timeout)
        except FutureTimeoutError:
            with self._lock:
                flight.waiters -= 1
                # An inline leader always finishes; only a helper thread can be orphaned.
                if flight.detached and flight.waiters == 0:
                    flight.abandoned = True
                    if self._inflight.get(key) is flight:
                        del self._inflight[key]
            logger.warning("Aggregate %s did not compute within %ss", key, timeout)
            raise CacheComputeTimeout(
                f"Computing {key} exceeded {timeout}s", key=key, timeout=timeout
            ) from None

    def _store(self, key: CacheKey, value: Any) -> None:
        size = estimate_size(key, value)
        if size > self._config.max_memory_bytes:
            logger.debug("Not caching %s: %s bytes exceeds the memory ceiling", key, size)
            return
        self._discard(key)
        self._entries[key] = _Entry(value=value, stored_at=self._clock(), size=size)
        self._namespaces.setdefault(key.namespace, set()).add(key)
        self._memory += size
        while (
            len(self._entries) > self._config.max_entries
            or self._memory > self._config.max_memory_bytes
        ):
            oldest = next(iter(self._entries))
            self._discard(oldest)
            self._evictions += 1
            logger.debug("Evicted least recently used aggregate %s", oldest)

    def _discard(self, key: CacheKey) -> bool:
        entry = self._entries.pop(key, None)
        if entry is None:
            return False
        self._memory -= entry.size
        keys = self._namespaces.get(key.namespace)
        if keys is not None:
            keys.discard(key)
            if not keys:
                del self._namespaces[key.namespace]
        return True

    def _invalidate_namespaces(self, namespaces) -> int:
        removed = 0
        with self._lock:
            for namespace in namespaces:
                self._generations[namespace] = self._generations.get(namespace, 0) + 1
                for key in list(self._namespaces.get(namespace, ())):
                    if self._discard(key):
                        removed += 1
        if removed:
            logger.debug("Invalidated %s cached aggregate(s) in %s", removed, namespaces)
        return removed
