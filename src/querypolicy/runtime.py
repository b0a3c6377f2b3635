"""
In-process query runtime.

Applies cache policies to an explicit store object:
- Serves fresh entries from memory and reloads stale ones
- Retries failed loads with the policy's exponential backoff
- Deduplicates concurrent loads of the same key
- Evicts entries unused for longer than their gc window
- Supports invalidation and optimistic updates with rollback

The store is owned by whoever constructs the ``QueryClient``; there is no
module-level instance.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping, Optional, Protocol

from querypolicy.errors import (
    ClientError,
    QueryPolicyError,
    TransientError,
    error_message,
    is_client_error,
    status_of,
)
from querypolicy.keys import CacheKey, hashable_key, key_starts_with, normalize_key
from querypolicy.policy import CachePolicy

logger = logging.getLogger(__name__)

Loader = Callable[[], Awaitable[Any]]
Updater = Callable[[Any], Any]

MS_PER_SECOND = 1000.0
DEFAULT_GC_TIME = 300.0


class QueryRuntime(Protocol):
    """Runtime that performs loads and stores results under a policy."""

    async def fetch_query(self, key: CacheKey, loader: Loader, policy: CachePolicy) -> Any:
        """Return data for ``key``, loading it when missing or stale."""
        ...

    async def prefetch_query(self, key: CacheKey, loader: Loader, policy: CachePolicy) -> Any:
        """Warm the entry for ``key`` ahead of use."""
        ...


class QueryStatus(str, Enum):
    """Lifecycle states of a cached entry."""

    IDLE = "idle"
    FETCHING = "fetching"
    SUCCESS = "success"
    ERROR = "error"


@dataclass
class QueryEntry:
    """A cached query result with its bookkeeping."""

    key: tuple[Any, ...]
    policy: Optional[CachePolicy] = None
    data: Any = None
    error: Optional[BaseException] = None
    status: QueryStatus = QueryStatus.IDLE
    updated_at: Optional[float] = None
    last_used_at: float = 0.0
    invalidated: bool = False
    failure_count: int = 0
    in_flight: Optional[asyncio.Task[Any]] = field(default=None, repr=False)

    @property
    def gc_time(self) -> float:
        return self.policy.gc_time if self.policy is not None else DEFAULT_GC_TIME

    def is_stale(self, now: float) -> bool:
        """Entries without data, invalidated entries and expired entries are stale."""
        if self.updated_at is None or self.invalidated:
            return True
        if self.policy is None:
            return True
        return now - self.updated_at >= self.policy.stale_time


@dataclass(frozen=True)
class OptimisticContext:
    """Snapshot taken before an optimistic write."""

    key: tuple[Any, ...]
    previous_data: Any


@dataclass(frozen=True)
class QueryState:
    """Consumer-facing summary of an entry."""

    data: Any
    error: Optional[str]
    loading: bool
    is_error: bool
    is_success: bool
    has_data: bool


class QueryClient:
    """
    Asyncio query store applying CachePolicy windows and retry policies.

    Args:
        clock: Monotonic time source in seconds (injectable for tests)
        sleep: Async sleep used between retries (injectable for tests)
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._clock = clock
        self._sleep = sleep
        self._entries: dict[tuple[Any, ...], QueryEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        try:
            return hashable_key(key) in self._entries  # type: ignore[arg-type]
        except QueryPolicyError:
            return False

    def _entry(self, key: CacheKey) -> QueryEntry:
        identity = hashable_key(key)
        entry = self._entries.get(identity)
        if entry is None:
            entry = QueryEntry(key=identity, last_used_at=self._clock())
            self._entries[identity] = entry
        return entry

    def _matching(self, prefix: CacheKey) -> list[QueryEntry]:
        return [e for e in self._entries.values() if key_starts_with(e.key, prefix)]

    async def fetch_query(self, key: CacheKey, loader: Loader, policy: CachePolicy) -> Any:
        """
        Return cached data when fresh, otherwise load it under ``policy``.

        Disabled queries never load; they return whatever is cached.

        Raises:
            ClientError: Loader failed with a 4xx status
            TransientError: Loader kept failing after every retry
        """
        entry = self._entry(key)
        entry.policy = policy
        now = self._clock()
        entry.last_used_at = now

        if not policy.enabled:
            logger.debug("Query %s disabled, serving cache", normalize_key(key))
            return entry.data

        if entry.status == QueryStatus.SUCCESS and not entry.is_stale(now):
            logger.debug("Cache hit for %s", normalize_key(key))
            return entry.data

        return await self._load(entry, loader, policy)

    async def prefetch_query(self, key: CacheKey, loader: Loader, policy: CachePolicy) -> Any:
        """Warm an entry; identical to ``fetch_query`` except for logging."""
        logger.debug("Prefetching %s", normalize_key(key))
        return await self.fetch_query(key, loader, policy)

    async def _load(self, entry: QueryEntry, loader: Loader, policy: CachePolicy) -> Any:
        if entry.in_flight is not None and not entry.in_flight.done():
            logger.debug("Joining in-flight load for %s", normalize_key(entry.key))
            return await asyncio.shield(entry.in_flight)

        task = asyncio.ensure_future(self._run_with_retry(entry, loader, policy))
        entry.in_flight = task

        def _clear(done: asyncio.Task[Any]) -> None:
            if entry.in_flight is done:
                entry.in_flight = None

        task.add_done_callback(_clear)
        return await asyncio.shield(task)

    async def _run_with_retry(self, entry: QueryEntry, loader: Loader, policy: CachePolicy) -> Any:
        name = normalize_key(entry.key)
        entry.status = QueryStatus.FETCHING
        entry.failure_count = 0

        while True:
            try:
                data = await loader()
            except asyncio.CancelledError:
                entry.status = QueryStatus.SUCCESS if entry.updated_at is not None else QueryStatus.IDLE
                raise
            except Exception as e:
                attempt_index = entry.failure_count
                entry.failure_count += 1

                if policy.retry.should_retry(attempt_index, e):
                    delay_ms = policy.retry.backoff_delay(attempt_index)
                    logger.warning(
                        f"Error loading {name}: {e} "
                        f"(attempt {entry.failure_count}/{policy.retry.max_attempts + 1}), "
                        f"retrying after {delay_ms}ms"
                    )
                    await self._sleep(delay_ms / MS_PER_SECOND)
                    continue

                entry.status = QueryStatus.ERROR
                entry.error = e
                logger.error(f"Failed to load {name} after {entry.failure_count} attempts: {e}")
                if isinstance(e, QueryPolicyError):
                    raise
                if is_client_error(e):
                    raise ClientError(status_of(e) or 400, error_message(e)) from e
                raise TransientError(
                    f"Failed to load {name} after {entry.failure_count} attempts: {e}",
                    attempts=entry.failure_count,
                ) from e

            entry.data = data
            entry.error = None
            entry.status = QueryStatus.SUCCESS
            entry.updated_at = self._clock()
            entry.invalidated = False
            logger.debug(f"Loaded {name} after {entry.failure_count + 1} attempt(s)")
            return data

    def get_query_data(self, key: CacheKey) -> Any:
        """Return cached data for ``key`` or None."""
        entry = self._entries.get(hashable_key(key))
        return entry.data if entry is not None else None

    def set_query_data(
        self,
        key: CacheKey,
        value: Any,
        policy: Optional[CachePolicy] = None,
    ) -> Any:
        """
        Write data directly into the store.

        ``value`` may be a callable receiving the previous data, the way
        list mutations append or drop items.
        """
        entry = self._entry(key)
        new_data = value(entry.data) if callable(value) else value
        entry.data = new_data
        entry.error = None
        entry.status = QueryStatus.SUCCESS
        entry.updated_at = self._clock()
        entry.last_used_at = entry.updated_at
        entry.invalidated = False
        if policy is not None:
            entry.policy = policy
        return new_data

    def is_stale(self, key: CacheKey) -> bool:
        """Return True if the entry is missing or past its stale window."""
        entry = self._entries.get(hashable_key(key))
        if entry is None:
            return True
        return entry.is_stale(self._clock())

    def invalidate_queries(self, prefix: CacheKey) -> int:
        """Mark every entry under ``prefix`` stale. Returns the count."""
        matched = self._matching(prefix)
        for entry in matched:
            entry.invalidated = True
        logger.debug("Invalidated %d entries under %s", len(matched), normalize_key(prefix))
        return len(matched)

    def remove_queries(self, prefix: CacheKey) -> int:
        """Drop every entry under ``prefix``. Returns the count."""
        matched = self._matching(prefix)
        for entry in matched:
            if entry.in_flight is not None:
                entry.in_flight.cancel()
            del self._entries[entry.key]
        return len(matched)

    async def cancel_queries(self, prefix: CacheKey) -> int:
        """Cancel in-flight loads under ``prefix``. Returns the count."""
        tasks = [
            e.in_flight
            for e in self._matching(prefix)
            if e.in_flight is not None and not e.in_flight.done()
        ]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        return len(tasks)

    def collect_garbage(self) -> list[tuple[Any, ...]]:
        """Evict idle entries unused for longer than their gc window."""
        now = self._clock()
        evicted = [
            identity
            for identity, entry in self._entries.items()
            if entry.in_flight is None and now - entry.last_used_at >= entry.gc_time
        ]
        for identity in evicted:
            del self._entries[identity]
        if evicted:
            logger.info("Evicted %d idle query entries", len(evicted))
        return evicted

    async def optimistic_update(self, key: CacheKey, updater: Any) -> OptimisticContext:
        """
        Apply a speculative write, returning the snapshot for ``rollback``.

        In-flight loads of the key are cancelled first so they cannot
        overwrite the optimistic value.
        """
        await self.cancel_queries(key)
        previous = self.get_query_data(key)
        self.set_query_data(key, updater)
        return OptimisticContext(key=hashable_key(key), previous_data=previous)

    def rollback(self, context: OptimisticContext) -> None:
        """Restore the data captured by ``optimistic_update``."""
        self.set_query_data(context.key, context.previous_data)
        logger.debug("Rolled back optimistic update for %s", normalize_key(context.key))

    def settle(self, key: CacheKey) -> int:
        """Invalidate after a mutation completes so the server state wins."""
        return self.invalidate_queries(key)

    async def add_item(self, key: CacheKey, item: Any) -> OptimisticContext:
        """Optimistically append ``item`` to a cached list."""

        def append(old: Any) -> Any:
            if not old or not isinstance(old, list):
                return [item]
            return [*old, item]

        return await self.optimistic_update(key, append)

    async def remove_item(self, key: CacheKey, item_id: Any, id_field: str = "_id") -> OptimisticContext:
        """Optimistically drop the items whose ``id_field`` equals ``item_id``."""

        def drop(old: Any) -> Any:
            if not old or not isinstance(old, list):
                return old
            return [i for i in old if not _has_id(i, id_field, item_id)]

        return await self.optimistic_update(key, drop)

    async def update_item(
        self,
        key: CacheKey,
        item_id: Any,
        updates: Mapping[str, Any],
        id_field: str = "_id",
    ) -> OptimisticContext:
        """Optimistically merge ``updates`` into the matching items of a cached list."""

        def patch(old: Any) -> Any:
            if not old or not isinstance(old, list):
                return old
            return [{**i, **updates} if _has_id(i, id_field, item_id) else i for i in old]

        return await self.optimistic_update(key, patch)

    def query_state(self, key: CacheKey) -> QueryState:
        """Summarize an entry for display."""
        entry = self._entries.get(hashable_key(key))
        if entry is None:
            return QueryState(
                data=None, error=None, loading=False, is_error=False, is_success=False, has_data=False
            )
        is_error = entry.status == QueryStatus.ERROR
        is_success = entry.status == QueryStatus.SUCCESS
        return QueryState(
            data=entry.data,
            error=error_message(entry.error) if is_error else None,
            loading=entry.status == QueryStatus.FETCHING,
            is_error=is_error,
            is_success=is_success,
            has_data=is_success and entry.data is not None,
        )


def _has_id(item: Any, id_field: str, item_id: Any) -> bool:
    return isinstance(item, Mapping) and id_field in item and item[id_field] == item_id


def combine_query_states(states: Mapping[str, QueryState]) -> dict[str, Any]:
    """
    Merge several query states into one loading/error view.

    Example:
        >>> combined = combine_query_states({"stats": stats_state, "alerts": alerts_state})
        >>> combined["loading"]
        False
    """
    errors = [s.error for s in states.values() if s.error]
    return {
        "queries": dict(states),
        "loading": any(s.loading for s in states.values()),
        "errors": errors,
        "has_errors": bool(errors),
        "has_data": any(s.has_data for s in states.values()),
        "is_success": all(s.is_success for s in states.values()),
    }
