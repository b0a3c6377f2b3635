"""
Fetch and prefetch entry points.

The engine turns a key into a policy (tier classification, tier defaults,
prefix overrides, caller overrides) and hands ``(key, loader, policy)`` to a
query runtime. It performs no I/O of its own.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Generator, Optional

from querypolicy.config import Settings, get_settings
from querypolicy.keys import CacheKey, normalize_key
from querypolicy.policy import (
    CachePolicy,
    OverrideTable,
    Overrides,
    coerce_overrides,
    derive_policy,
    merge_policy,
)
from querypolicy.prefetch import prefetch_policy, should_prefetch
from querypolicy.retry import RetryPolicy
from querypolicy.runtime import Loader, QueryClient, QueryRuntime
from querypolicy.tiers import Tier, classify

logger = logging.getLogger(__name__)


class QueryHandle:
    """
    Pending result of a fetch or prefetch.

    ``key``, ``tier`` and ``policy`` are available immediately; awaiting the
    handle starts the runtime call (once) and yields its data or error.
    """

    def __init__(
        self,
        key: CacheKey,
        tier: Tier,
        policy: CachePolicy,
        start: Callable[[], Awaitable[Any]],
    ) -> None:
        self.key = key
        self.tier = tier
        self.policy = policy
        self._start = start
        self._task: Optional[asyncio.Future[Any]] = None

    def _ensure_started(self) -> asyncio.Future[Any]:
        if self._task is None:
            self._task = asyncio.ensure_future(self._start())
        return self._task

    def __await__(self) -> Generator[Any, None, Any]:
        return self._ensure_started().__await__()

    async def result(self) -> Any:
        """Await the data produced by the runtime."""
        return await self._ensure_started()

    def __repr__(self) -> str:
        return f"QueryHandle(key={self.key!r}, tier={self.tier.value})"


class QueryPolicyEngine:
    """
    Policy front-end for a query runtime.

    Args:
        runtime: Store that performs loads (a ``QueryClient`` or compatible)
        overrides: Per-key-prefix overrides, loaded from settings if omitted
        settings: Configuration (defaults to ``get_settings()``)
    """

    def __init__(
        self,
        runtime: QueryRuntime,
        overrides: Optional[OverrideTable] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.runtime = runtime
        self.settings = settings or get_settings()
        self.retry = RetryPolicy(
            max_attempts=self.settings.RETRY_MAX_ATTEMPTS,
            base_delay_ms=self.settings.RETRY_BASE_DELAY_MS,
            max_delay_ms=self.settings.RETRY_MAX_DELAY_MS,
        )
        if overrides is None and self.settings.OVERRIDES_PATH:
            overrides = OverrideTable.from_yaml(Path(self.settings.OVERRIDES_PATH))
        self.overrides = overrides or OverrideTable()

    def resolve(self, key: CacheKey, overrides: Optional[Overrides] = None) -> tuple[Tier, CachePolicy]:
        """
        Compute tier and merged policy for a key.

        Precedence: caller overrides > prefix table > tier defaults.

        Raises:
            PolicyError: If the key or overrides are malformed
        """
        explicit = coerce_overrides(overrides)
        tier = classify(key)
        policy = merge_policy(derive_policy(tier, self.retry), self.overrides.lookup(key), explicit)
        return tier, policy

    def fetch(
        self,
        key: CacheKey,
        loader: Loader,
        overrides: Optional[Overrides] = None,
    ) -> QueryHandle:
        """
        Fetch data for ``key`` under its derived policy.

        Example:
            >>> handle = engine.fetch(("drones", "list"), load_drones, {"stale_time": 5})
            >>> handle.policy.stale_time
            5.0
            >>> drones = await handle
        """
        tier, policy = self.resolve(key, overrides)
        logger.debug(
            "Fetching %s (tier=%s, stale_time=%s, gc_time=%s)",
            normalize_key(key),
            tier.value,
            policy.stale_time,
            policy.gc_time,
        )
        return QueryHandle(key, tier, policy, lambda: self.runtime.fetch_query(key, loader, policy))

    def prefetch(
        self,
        key: CacheKey,
        loader: Loader,
        overrides: Optional[Overrides] = None,
    ) -> Optional[QueryHandle]:
        """
        Warm ``key`` speculatively, or return None when prefetch is gated off.

        Prefetched entries use the uniform prefetch stale window rather than
        the tier's; caller overrides still win.
        """
        if not should_prefetch(key):
            return None

        tier = classify(key)
        policy = prefetch_policy(
            tier,
            stale_time=self.settings.PREFETCH_STALE_TIME,
        ).model_copy(update={"retry": self.retry})
        policy = merge_policy(policy, self.overrides.lookup(key), overrides)
        logger.debug("Prefetch scheduled for %s (tier=%s)", normalize_key(key), tier.value)
        return QueryHandle(key, tier, policy, lambda: self.runtime.prefetch_query(key, loader, policy))


def fetch(
    key: CacheKey,
    loader: Loader,
    overrides: Optional[Overrides] = None,
    runtime: Optional[QueryRuntime] = None,
) -> QueryHandle:
    """
    Fetch through a one-off engine.

    Pass ``runtime`` to share a store across calls; without it each call
    gets a private ``QueryClient`` and nothing is cached between calls.
    """
    return QueryPolicyEngine(runtime or QueryClient()).fetch(key, loader, overrides)


def prefetch(
    key: CacheKey,
    loader: Loader,
    overrides: Optional[Overrides] = None,
    runtime: Optional[QueryRuntime] = None,
) -> Optional[QueryHandle]:
    """Prefetch through a one-off engine. See ``fetch``."""
    return QueryPolicyEngine(runtime or QueryClient()).prefetch(key, loader, overrides)
