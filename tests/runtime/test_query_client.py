"""Unit tests for the in-process QueryClient."""

from __future__ import annotations

import asyncio
from typing import Any
from unittest.mock import AsyncMock

import pytest

from querypolicy.errors import ClientError, PolicyError, TransientError
from querypolicy.policy import derive_policy, merge_policy
from querypolicy.retry import RetryPolicy
from querypolicy.runtime import QueryClient, QueryState, QueryStatus, combine_query_states
from querypolicy.tiers import Tier

from tests.conftest import FakeClock, RecordingSleep

STATIC = derive_policy(Tier.STATIC)
REAL_TIME = derive_policy(Tier.REAL_TIME)


def _client(clock: FakeClock, sleeper: RecordingSleep) -> QueryClient:
    return QueryClient(clock=clock, sleep=sleeper)


@pytest.mark.asyncio
class TestFetchQuery:
    """Tests for caching and staleness."""

    async def test_loads_and_caches(self, clock: FakeClock, sleeper: RecordingSleep) -> None:
        client = _client(clock, sleeper)
        loader = AsyncMock(return_value=["mavic"])

        assert await client.fetch_query(("drones", "list"), loader, STATIC) == ["mavic"]
        assert await client.fetch_query(("drones", "list"), loader, STATIC) == ["mavic"]
        assert loader.await_count == 1

    async def test_reloads_when_stale(self, clock: FakeClock, sleeper: RecordingSleep) -> None:
        client = _client(clock, sleeper)
        loader = AsyncMock(side_effect=[{"state": "pending"}, {"state": "completed"}])
        key = ("payments", "status", "o-1")

        await client.fetch_query(key, loader, REAL_TIME)
        clock.advance(29)
        assert not client.is_stale(key)
        clock.advance(1)
        assert client.is_stale(key)
        assert await client.fetch_query(key, loader, REAL_TIME) == {"state": "completed"}
        assert loader.await_count == 2

    async def test_disabled_query_never_loads(self, clock: FakeClock, sleeper: RecordingSleep) -> None:
        client = _client(clock, sleeper)
        loader = AsyncMock(return_value=1)
        disabled = merge_policy(STATIC, {"enabled": False})

        assert await client.fetch_query(("drones", "detail", ""), loader, disabled) is None
        loader.assert_not_awaited()

    async def test_concurrent_loads_are_deduplicated(
        self, clock: FakeClock, sleeper: RecordingSleep
    ) -> None:
        client = _client(clock, sleeper)
        gate = asyncio.Event()
        calls = 0

        async def loader() -> str:
            nonlocal calls
            calls += 1
            await gate.wait()
            return "stats"

        first = asyncio.ensure_future(client.fetch_query(("dashboard", "stats"), loader, STATIC))
        second = asyncio.ensure_future(client.fetch_query(("dashboard", "stats"), loader, STATIC))
        await asyncio.sleep(0)
        gate.set()

        assert await asyncio.gather(first, second) == ["stats", "stats"]
        assert calls == 1

    async def test_mapping_segments_share_entry(self, clock: FakeClock, sleeper: RecordingSleep) -> None:
        client = _client(clock, sleeper)
        loader = AsyncMock(return_value=[])

        await client.fetch_query(("drones", "list", {"a": 1, "b": 2}), loader, STATIC)
        await client.fetch_query(("drones", "list", {"b": 2, "a": 1}), loader, STATIC)
        assert loader.await_count == 1
        assert len(client) == 1

    async def test_empty_key_rejected(self, clock: FakeClock, sleeper: RecordingSleep) -> None:
        client = _client(clock, sleeper)
        with pytest.raises(PolicyError):
            await client.fetch_query((), AsyncMock(), STATIC)


@pytest.mark.asyncio
class TestRetries:
    """Tests for the retry loop."""

    async def test_retries_then_succeeds(self, clock: FakeClock, sleeper: RecordingSleep) -> None:
        client = _client(clock, sleeper)
        loader = AsyncMock(side_effect=[RuntimeError("reset"), ConnectionError("down"), "ok"])

        assert await client.fetch_query(("drones",), loader, STATIC) == "ok"
        assert loader.await_count == 3
        assert sleeper.delays == [1.0, 2.0]

    async def test_exhausted_budget_raises_transient(
        self, clock: FakeClock, sleeper: RecordingSleep
    ) -> None:
        client = _client(clock, sleeper)
        loader = AsyncMock(side_effect=ConnectionError("down"))

        with pytest.raises(TransientError) as exc_info:
            await client.fetch_query(("drones",), loader, STATIC)

        assert exc_info.value.attempts == 3
        assert isinstance(exc_info.value.__cause__, ConnectionError)
        assert loader.await_count == 3
        assert client.query_state(("drones",)).is_error

    async def test_client_error_not_retried(self, clock: FakeClock, sleeper: RecordingSleep) -> None:
        client = _client(clock, sleeper)

        class NotFound(Exception):
            status = 404

        loader = AsyncMock(side_effect=NotFound("missing"))

        with pytest.raises(ClientError) as exc_info:
            await client.fetch_query(("drones", "detail", 9), loader, STATIC)

        assert exc_info.value.status == 404
        assert loader.await_count == 1
        assert sleeper.delays == []

    async def test_policy_error_fails_fast(self, clock: FakeClock, sleeper: RecordingSleep) -> None:
        client = _client(clock, sleeper)
        error = PolicyError("bad key")
        loader = AsyncMock(side_effect=error)

        with pytest.raises(PolicyError) as exc_info:
            await client.fetch_query(("drones",), loader, STATIC)

        assert exc_info.value is error
        assert loader.await_count == 1
        assert sleeper.delays == []
        assert client.query_state(("drones",)).is_error

    async def test_transient_error_from_loader_is_retried(
        self, clock: FakeClock, sleeper: RecordingSleep
    ) -> None:
        client = _client(clock, sleeper)
        loader = AsyncMock(side_effect=[TransientError("upstream flaked", attempts=1), "ok"])

        assert await client.fetch_query(("drones",), loader, STATIC) == "ok"
        assert loader.await_count == 2
        assert sleeper.delays == [1.0]

    async def test_backoff_respects_ceiling(self, clock: FakeClock, sleeper: RecordingSleep) -> None:
        client = _client(clock, sleeper)
        policy = merge_policy(
            STATIC, {"retry": RetryPolicy(max_attempts=4, base_delay_ms=1000, max_delay_ms=3000)}
        )
        loader = AsyncMock(side_effect=[OSError()] * 4 + ["ok"])

        assert await client.fetch_query(("drones",), loader, policy) == "ok"
        assert sleeper.delays == [1.0, 2.0, 3.0, 3.0]

    async def test_error_cleared_after_success(self, clock: FakeClock, sleeper: RecordingSleep) -> None:
        client = _client(clock, sleeper)
        no_retry = merge_policy(STATIC, {"retry": RetryPolicy(max_attempts=0)})
        loader = AsyncMock(side_effect=[OSError("down"), "ok"])

        with pytest.raises(TransientError):
            await client.fetch_query(("drones",), loader, no_retry)
        assert await client.fetch_query(("drones",), loader, no_retry) == "ok"
        assert client.query_state(("drones",)).error is None


class TestStoreOperations:
    """Tests for direct store manipulation."""

    def test_set_and_get(self, clock: FakeClock, sleeper: RecordingSleep) -> None:
        client = _client(clock, sleeper)
        client.set_query_data(("drones", "detail", 1), {"_id": 1})
        assert client.get_query_data(("drones", "detail", 1)) == {"_id": 1}
        assert client.get_query_data(("drones", "detail", 2)) is None

    def test_set_with_updater(self, clock: FakeClock, sleeper: RecordingSleep) -> None:
        client = _client(clock, sleeper)
        client.set_query_data(("drones", "list"), [1])
        client.set_query_data(("drones", "list"), lambda old: [*old, 2])
        assert client.get_query_data(("drones", "list")) == [1, 2]

    def test_invalidate_by_prefix(self, clock: FakeClock, sleeper: RecordingSleep) -> None:
        client = _client(clock, sleeper)
        client.set_query_data(("drones", "list", {"filters": {}}), [], STATIC)
        client.set_query_data(("drones", "list", "search", "fpv"), [], STATIC)
        client.set_query_data(("drones", "detail", 1), {}, STATIC)

        assert client.invalidate_queries(("drones", "list")) == 2
        assert client.is_stale(("drones", "list", "search", "fpv"))
        assert not client.is_stale(("drones", "detail", 1))

    def test_remove_by_prefix(self, clock: FakeClock, sleeper: RecordingSleep) -> None:
        client = _client(clock, sleeper)
        client.set_query_data(("orders", "detail", "a"), {})
        client.set_query_data(("orders", "detail", "b"), {})
        assert client.remove_queries(("orders",)) == 2
        assert len(client) == 0

    def test_collect_garbage(self, clock: FakeClock, sleeper: RecordingSleep) -> None:
        client = _client(clock, sleeper)
        client.set_query_data(("payments", "status", 1), {}, REAL_TIME)
        client.set_query_data(("drones", "list"), [], STATIC)

        clock.advance(300)
        assert client.collect_garbage() == [("payments", "status", 1)]
        assert ("drones", "list") in client
        assert ("payments", "status", 1) not in client

    def test_entry_without_policy_uses_default_gc(
        self, clock: FakeClock, sleeper: RecordingSleep
    ) -> None:
        client = _client(clock, sleeper)
        client.set_query_data(("faq",), "text")
        clock.advance(299)
        assert client.collect_garbage() == []
        clock.advance(1)
        assert client.collect_garbage() == [("faq",)]

    def test_query_state_for_missing_key(self, clock: FakeClock, sleeper: RecordingSleep) -> None:
        state = _client(clock, sleeper).query_state(("nothing",))
        assert state == QueryState(
            data=None, error=None, loading=False, is_error=False, is_success=False, has_data=False
        )


@pytest.mark.asyncio
class TestOptimisticUpdates:
    """Tests for optimistic writes and rollback."""

    async def test_update_and_rollback(self, clock: FakeClock, sleeper: RecordingSleep) -> None:
        client = _client(clock, sleeper)
        key = ("orders", "user", 5)
        client.set_query_data(key, [{"_id": "a"}])

        context = await client.optimistic_update(key, lambda old: [*old, {"_id": "b"}])
        assert len(client.get_query_data(key)) == 2

        client.rollback(context)
        assert client.get_query_data(key) == [{"_id": "a"}]

    async def test_settle_invalidates(self, clock: FakeClock, sleeper: RecordingSleep) -> None:
        client = _client(clock, sleeper)
        key = ("orders", "user", 5)
        client.set_query_data(key, [], derive_policy(Tier.USER_SCOPED))

        assert client.settle(key) == 1
        assert client.is_stale(key)

    async def test_update_cancels_in_flight_load(
        self, clock: FakeClock, sleeper: RecordingSleep
    ) -> None:
        client = _client(clock, sleeper)
        key = ("orders", "detail", "o-1")
        gate = asyncio.Event()

        async def slow_loader() -> Any:
            await gate.wait()
            return {"status": "server"}

        pending = asyncio.ensure_future(client.fetch_query(key, slow_loader, STATIC))
        await asyncio.sleep(0)

        await client.optimistic_update(key, {"status": "optimistic"})
        gate.set()

        with pytest.raises(asyncio.CancelledError):
            await pending
        assert client.get_query_data(key) == {"status": "optimistic"}


@pytest.mark.asyncio
class TestOptimisticListUpdates:
    """Tests for add_item, remove_item and update_item."""

    async def test_add_item(self, clock: FakeClock, sleeper: RecordingSleep) -> None:
        client = _client(clock, sleeper)
        key = ("drones", "list")
        client.set_query_data(key, [{"_id": "a"}])

        context = await client.add_item(key, {"_id": "b"})
        assert client.get_query_data(key) == [{"_id": "a"}, {"_id": "b"}]

        client.rollback(context)
        assert client.get_query_data(key) == [{"_id": "a"}]

    async def test_add_item_to_empty_or_non_list(
        self, clock: FakeClock, sleeper: RecordingSleep
    ) -> None:
        client = _client(clock, sleeper)
        await client.add_item(("drones", "list"), {"_id": "a"})
        assert client.get_query_data(("drones", "list")) == [{"_id": "a"}]

        client.set_query_data(("drones", "page"), {"items": []})
        await client.add_item(("drones", "page"), {"_id": "b"})
        assert client.get_query_data(("drones", "page")) == [{"_id": "b"}]

    async def test_remove_item(self, clock: FakeClock, sleeper: RecordingSleep) -> None:
        client = _client(clock, sleeper)
        key = ("orders", "user", 5)
        client.set_query_data(key, [{"_id": "a"}, {"_id": "b"}])

        await client.remove_item(key, "a")
        assert client.get_query_data(key) == [{"_id": "b"}]

    async def test_remove_item_custom_id_field(
        self, clock: FakeClock, sleeper: RecordingSleep
    ) -> None:
        client = _client(clock, sleeper)
        key = ("drone-media", "d-1")
        client.set_query_data(key, [{"id": 1}, {"id": 2}])

        await client.remove_item(key, 2, id_field="id")
        assert client.get_query_data(key) == [{"id": 1}]

    async def test_update_item(self, clock: FakeClock, sleeper: RecordingSleep) -> None:
        client = _client(clock, sleeper)
        key = ("orders", "list")
        client.set_query_data(key, [{"_id": "a", "status": "pending"}, {"_id": "b", "status": "pending"}])

        context = await client.update_item(key, "b", {"status": "shipped"})
        assert client.get_query_data(key) == [
            {"_id": "a", "status": "pending"},
            {"_id": "b", "status": "shipped"},
        ]
        assert context.previous_data[1]["status"] == "pending"

    async def test_non_list_data_left_untouched(
        self, clock: FakeClock, sleeper: RecordingSleep
    ) -> None:
        client = _client(clock, sleeper)
        client.set_query_data(("dashboard", "stats"), {"orders": 3})

        await client.remove_item(("dashboard", "stats"), "a")
        await client.update_item(("dashboard", "stats"), "a", {"x": 1})
        assert client.get_query_data(("dashboard", "stats")) == {"orders": 3}

        await client.remove_item(("missing",), "a")
        assert client.get_query_data(("missing",)) is None


class TestCombineStates:
    """Tests for combine_query_states."""

    def test_combined_view(self) -> None:
        ok = QueryState(data=1, error=None, loading=False, is_error=False, is_success=True, has_data=True)
        failed = QueryState(
            data=None, error="boom", loading=False, is_error=True, is_success=False, has_data=False
        )
        combined = combine_query_states({"stats": ok, "alerts": failed})
        assert combined["errors"] == ["boom"]
        assert combined["has_errors"] is True
        assert combined["has_data"] is True
        assert combined["is_success"] is False
        assert combined["loading"] is False

    def test_status_enum_values(self) -> None:
        assert QueryStatus.FETCHING.value == "fetching"
