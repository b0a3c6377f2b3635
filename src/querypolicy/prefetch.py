"""Prefetch gating for speculative loads."""

from __future__ import annotations

import logging

from querypolicy.keys import CacheKey, normalize_key
from querypolicy.policy import CachePolicy, Overrides, derive_policy, merge_policy
from querypolicy.tiers import Tier

logger = logging.getLogger(__name__)

PREFETCH_STALE_TIME = 600
NO_PREFETCH_MARKERS = ("user-specific", "real-time")


def should_prefetch(key: CacheKey) -> bool:
    """
    Decide whether a key may be loaded speculatively.

    Keys marked ``user-specific`` or ``real-time`` are never prefetched.
    This check is narrower than tier classification on purpose: a regular
    ``orders`` key may still be warmed ahead of navigation.

    Example:
        >>> should_prefetch(["user-specific", "profile"])
        False
        >>> should_prefetch(["drone", "list"])
        True
    """
    normalized = normalize_key(key)
    allowed = not any(marker in normalized for marker in NO_PREFETCH_MARKERS)
    if not allowed:
        logger.debug("Prefetch skipped for %s", normalized)
    return allowed


def prefetch_policy(
    tier: Tier,
    overrides: Overrides | None = None,
    stale_time: float = PREFETCH_STALE_TIME,
) -> CachePolicy:
    """
    Policy for a prefetched entry.

    The stale window is the uniform prefetch window, never the tier's.
    Caller overrides still win.
    """
    base = derive_policy(tier).model_copy(update={"stale_time": float(stale_time)})
    return merge_policy(base, overrides)
