"""Storefront query catalogue: key factories, per-query presets and invalidation.

Each resource gets a family of tagged keys so related entries share a
prefix (``drones/list`` covers every filtered drone list). Presets carry the
per-query overrides the storefront screens use on top of tier defaults.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional, Union

import httpx

from querypolicy.engine import QueryHandle, QueryPolicyEngine
from querypolicy.keys import KeyNamespace, TaggedKey
from querypolicy.loaders import clean_params, json_loader
from querypolicy.policy import PolicyOverrides
from querypolicy.retry import DASHBOARD_ALERTS_RETRY, DASHBOARD_STATS_RETRY
from querypolicy.runtime import Loader, QueryClient

logger = logging.getLogger(__name__)

Id = Union[str, int]

MIN_SEARCH_LENGTH = 2
PAYMENT_POLL_INTERVAL = 5.0
PAYMENT_TERMINAL_STATES = frozenset({"completed", "failed"})
CATALOGUE_STALE_TIME = 300
CATALOGUE_GC_TIME = 600


class DroneKeys:
    """Key family for the drone catalogue."""

    all = TaggedKey(KeyNamespace.DRONES, "drones")

    @classmethod
    def lists(cls) -> TaggedKey:
        return cls.all.extend("list")

    @classmethod
    def list(cls, filters: Optional[Mapping[str, Any]] = None) -> TaggedKey:
        return cls.lists().extend({"filters": dict(filters or {})})

    @classmethod
    def search(cls, term: str) -> TaggedKey:
        return cls.lists().extend("search", term)

    @classmethod
    def details(cls) -> TaggedKey:
        return cls.all.extend("detail")

    @classmethod
    def detail(cls, drone_id: Id) -> TaggedKey:
        return cls.details().extend(drone_id)


class OrderKeys:
    """Key family for orders."""

    all = TaggedKey(KeyNamespace.ORDERS, "orders")

    @classmethod
    def lists(cls) -> TaggedKey:
        return cls.all.extend("list")

    @classmethod
    def list(cls, filters: Optional[Mapping[str, Any]] = None) -> TaggedKey:
        return cls.lists().extend({"filters": dict(filters or {})})

    @classmethod
    def details(cls) -> TaggedKey:
        return cls.all.extend("detail")

    @classmethod
    def detail(cls, order_id: Id) -> TaggedKey:
        return cls.details().extend(order_id)

    @classmethod
    def user(cls) -> TaggedKey:
        return cls.all.extend("user")

    @classmethod
    def user_orders(cls, user_id: Id) -> TaggedKey:
        return cls.user().extend(user_id)


class PaymentKeys:
    """Key family for payments."""

    all = TaggedKey(KeyNamespace.PAYMENTS, "payments")

    @classmethod
    def status(cls, order_id: Id) -> TaggedKey:
        return cls.all.extend("status", order_id)


class DashboardKeys:
    """Key family for the admin dashboard."""

    all = TaggedKey(KeyNamespace.DASHBOARD, "dashboard")

    @classmethod
    def stats(cls) -> TaggedKey:
        return cls.all.extend("stats")

    @classmethod
    def alerts(cls) -> TaggedKey:
        return cls.all.extend("alerts")


class MediaKeys:
    """Key family for drone media."""

    drone_media_all = TaggedKey(KeyNamespace.MEDIA, "drone-media")
    all_media = TaggedKey(KeyNamespace.MEDIA, "all-media")

    @classmethod
    def drone_media(cls, drone_id: Id) -> TaggedKey:
        return cls.drone_media_all.extend(drone_id)


@dataclass(frozen=True)
class QueryDefinition:
    """A storefront query: key, endpoint and policy overrides."""

    key: TaggedKey
    path: str
    params: Mapping[str, Any] = field(default_factory=dict)
    overrides: Optional[PolicyOverrides] = None

    def loader(self, client: httpx.AsyncClient) -> Loader:
        """Build the HTTP loader for this query."""
        return json_loader(client, self.path, self.params)

    def fetch(self, engine: QueryPolicyEngine, client: httpx.AsyncClient) -> QueryHandle:
        """Fetch this query through ``engine``."""
        return engine.fetch(self.key, self.loader(client), self.overrides)

    def prefetch(self, engine: QueryPolicyEngine, client: httpx.AsyncClient) -> Optional[QueryHandle]:
        """Prefetch this query through ``engine``."""
        return engine.prefetch(self.key, self.loader(client), self.overrides)


def drones_query(filters: Optional[Mapping[str, Any]] = None) -> QueryDefinition:
    return QueryDefinition(
        key=DroneKeys.list(filters),
        path="/drones",
        params=clean_params(filters),
        overrides=PolicyOverrides(stale_time=CATALOGUE_STALE_TIME, gc_time=CATALOGUE_GC_TIME),
    )


def drone_query(drone_id: Optional[Id]) -> QueryDefinition:
    return QueryDefinition(
        key=DroneKeys.detail(drone_id or ""),
        path=f"/drones/{drone_id}",
        overrides=PolicyOverrides(
            stale_time=CATALOGUE_STALE_TIME,
            gc_time=CATALOGUE_GC_TIME,
            enabled=bool(drone_id),
        ),
    )


def search_drones_query(term: str) -> QueryDefinition:
    """Search results stay fresh for two minutes; short terms never load."""
    return QueryDefinition(
        key=DroneKeys.search(term),
        path="/drones",
        params={"search": term},
        overrides=PolicyOverrides(
            stale_time=120,
            enabled=bool(term) and len(term) >= MIN_SEARCH_LENGTH,
        ),
    )


def user_orders_query(user_id: Optional[Id]) -> QueryDefinition:
    return QueryDefinition(
        key=OrderKeys.user_orders(user_id or ""),
        path=f"/orders/user/{user_id}",
        overrides=PolicyOverrides(enabled=bool(user_id)),
    )


def order_query(order_id: Optional[Id]) -> QueryDefinition:
    return QueryDefinition(
        key=OrderKeys.detail(order_id or ""),
        path=f"/orders/{order_id}",
        overrides=PolicyOverrides(stale_time=60, enabled=bool(order_id)),
    )


def orders_query(filters: Optional[Mapping[str, Any]] = None) -> QueryDefinition:
    return QueryDefinition(
        key=OrderKeys.list(filters),
        path="/orders",
        params=clean_params(filters),
        overrides=PolicyOverrides(stale_time=60),
    )


def payment_status_query(order_id: Optional[Id]) -> QueryDefinition:
    return QueryDefinition(
        key=PaymentKeys.status(order_id or ""),
        path=f"/payments/{order_id}/status",
        overrides=PolicyOverrides(
            gc_time=120,
            refetch_interval=PAYMENT_POLL_INTERVAL,
            enabled=bool(order_id),
        ),
    )


def dashboard_stats_query() -> QueryDefinition:
    return QueryDefinition(
        key=DashboardKeys.stats(),
        path="/dashboard/stats",
        overrides=PolicyOverrides(
            stale_time=120,
            gc_time=300,
            refetch_on_focus=True,
            retry=DASHBOARD_STATS_RETRY,
        ),
    )


def dashboard_alerts_query() -> QueryDefinition:
    return QueryDefinition(
        key=DashboardKeys.alerts(),
        path="/dashboard/alerts",
        overrides=PolicyOverrides(
            stale_time=60,
            gc_time=180,
            refetch_on_focus=True,
            retry=DASHBOARD_ALERTS_RETRY,
        ),
    )


def drone_media_query(drone_id: Optional[Id]) -> QueryDefinition:
    return QueryDefinition(
        key=MediaKeys.drone_media(drone_id or ""),
        path=f"/media/drones/{drone_id}",
        overrides=PolicyOverrides(
            stale_time=CATALOGUE_STALE_TIME,
            gc_time=CATALOGUE_GC_TIME,
            enabled=bool(drone_id),
        ),
    )


def payment_refetch_interval(data: Any) -> Optional[float]:
    """Polling interval for payment status: stop once the payment settles."""
    status = data.get("status") if isinstance(data, Mapping) else None
    if status in PAYMENT_TERMINAL_STATES:
        return None
    return PAYMENT_POLL_INTERVAL


class Mutation(str, Enum):
    """Storefront writes that change cached reads."""

    CREATE_DRONE = "create_drone"
    UPDATE_DRONE = "update_drone"
    DELETE_DRONE = "delete_drone"
    UPLOAD_DRONE_MEDIA = "upload_drone_media"
    CREATE_ORDER = "create_order"
    UPDATE_ORDER = "update_order"
    CONFIRM_PAYMENT = "confirm_payment"
    UPLOAD_MEDIA = "upload_media"
    DELETE_MEDIA = "delete_media"


def invalidation_targets(
    mutation: Mutation,
    *,
    order_id: Optional[Id] = None,
    user_id: Optional[Id] = None,
) -> list[TaggedKey]:
    """
    Key prefixes to invalidate after a mutation succeeds.

    Args:
        mutation: The write that completed
        order_id: Affected order, where relevant
        user_id: Owner of the affected order, where relevant
    """
    mutation = Mutation(mutation)

    if mutation in (
        Mutation.CREATE_DRONE,
        Mutation.UPDATE_DRONE,
        Mutation.DELETE_DRONE,
        Mutation.UPLOAD_DRONE_MEDIA,
    ):
        return [DroneKeys.lists()]

    if mutation in (Mutation.CREATE_ORDER, Mutation.UPDATE_ORDER):
        targets = [OrderKeys.lists()]
        if user_id:
            targets.insert(0, OrderKeys.user_orders(user_id))
        return targets

    if mutation == Mutation.CONFIRM_PAYMENT:
        targets = [OrderKeys.user()]
        if order_id:
            targets.insert(0, OrderKeys.detail(order_id))
        return targets

    targets = [MediaKeys.drone_media_all, DroneKeys.all]
    if mutation == Mutation.DELETE_MEDIA:
        targets.append(MediaKeys.all_media)
    return targets


def apply_mutation(
    client: QueryClient,
    mutation: Mutation,
    result: Optional[Mapping[str, Any]] = None,
) -> int:
    """
    Update the store after a successful mutation.

    Writes the returned record into its detail entry, drops the detail entry
    of a deleted drone, then invalidates related prefixes.

    Args:
        client: Store to update
        mutation: The write that completed
        result: Record returned by the API (``{"_id": ...}``; for payment
            confirmation ``{"order": {...}, "payment": {...}}``)

    Returns:
        Number of invalidated entries
    """
    mutation = Mutation(mutation)
    result = result or {}
    record_id = result.get("_id")
    order_id: Optional[Id] = None
    user_id: Optional[Id] = None

    if mutation in (Mutation.CREATE_DRONE, Mutation.UPDATE_DRONE, Mutation.UPLOAD_DRONE_MEDIA):
        if record_id:
            client.set_query_data(DroneKeys.detail(record_id), result)
    elif mutation == Mutation.DELETE_DRONE:
        if record_id:
            client.remove_queries(DroneKeys.detail(record_id))
    elif mutation in (Mutation.CREATE_ORDER, Mutation.UPDATE_ORDER):
        if record_id:
            client.set_query_data(OrderKeys.detail(record_id), result)
        user_id = result.get("userId")
    elif mutation == Mutation.CONFIRM_PAYMENT:
        order = result.get("order") or {}
        order_id = order.get("_id")
        if order_id:
            client.set_query_data(PaymentKeys.status(order_id), result.get("payment"))

    count = 0
    for prefix in invalidation_targets(mutation, order_id=order_id, user_id=user_id):
        count += client.invalidate_queries(prefix)
    logger.debug("Mutation %s invalidated %d entries", mutation.value, count)
    return count
