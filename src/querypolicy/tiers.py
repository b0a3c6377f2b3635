"""Cache tier classification for query keys."""

from __future__ import annotations

import logging
from enum import Enum

from querypolicy.keys import CacheKey, KeyNamespace, namespace_of, normalize_key

logger = logging.getLogger(__name__)


class Tier(str, Enum):
    """Freshness tiers a cache key can fall into."""

    STATIC = "static"
    USER_SCOPED = "user_scoped"
    REAL_TIME = "real_time"
    DEFAULT = "default"


REAL_TIME_MARKERS = ("payment", "status")
USER_SCOPED_MARKERS = ("user", "order")
STATIC_MARKER = "drone"

# Highest precedence first
TIER_PRIORITY: tuple[Tier, ...] = (Tier.REAL_TIME, Tier.USER_SCOPED, Tier.STATIC, Tier.DEFAULT)

_NAMESPACE_TIERS: dict[KeyNamespace, Tier] = {
    KeyNamespace.PAYMENTS: Tier.REAL_TIME,
    KeyNamespace.ORDERS: Tier.USER_SCOPED,
    KeyNamespace.USERS: Tier.USER_SCOPED,
    KeyNamespace.DRONES: Tier.STATIC,
    KeyNamespace.MEDIA: Tier.STATIC,
}


def classify_text(normalized: str) -> Tier:
    """
    Classify an already-normalized key string.

    First match wins: REAL_TIME > USER_SCOPED > STATIC > DEFAULT. A key such
    as ``user-drone-favourites`` is USER_SCOPED, never STATIC.
    """
    if any(marker in normalized for marker in REAL_TIME_MARKERS):
        return Tier.REAL_TIME
    if any(marker in normalized for marker in USER_SCOPED_MARKERS):
        return Tier.USER_SCOPED
    if STATIC_MARKER in normalized and "user" not in normalized:
        return Tier.STATIC
    return Tier.DEFAULT


def classify(key: CacheKey) -> Tier:
    """
    Select the cache tier for a key.

    Tagged keys resolve through their namespace, but never to a tier ranked
    below the one the substring rules give, so ``orders/status/<id>``
    keeps polling-grade freshness. Untagged keys use substring matching only.

    Raises:
        PolicyError: If the key is empty or malformed

    Example:
        >>> classify(("payments", "status", "o-1"))
        <Tier.REAL_TIME: 'real_time'>
        >>> classify(("drones", "list"))
        <Tier.STATIC: 'static'>
    """
    normalized = normalize_key(key)
    namespace = namespace_of(key)

    tier = classify_text(normalized)
    tagged = _NAMESPACE_TIERS.get(namespace)
    if tagged is not None and TIER_PRIORITY.index(tagged) < TIER_PRIORITY.index(tier):
        tier = tagged

    logger.debug("Classified key %s (namespace=%s) as %s", normalized, namespace.value, tier.value)
    return tier
