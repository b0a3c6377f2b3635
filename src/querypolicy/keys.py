"""Cache key normalization and namespace tagging.

A cache key is an ordered sequence of string or integer segments, for
example ``("drones", "detail", 42)``. Two keys are the same cache entry when
their segments are equal in order. For tier classification the segments are
joined with ``-`` and lowercased, which is lossy on purpose: keys whose
segments concatenate to the same string land in the same tier. Mapping
segments (list filters) identify the entry but are left out of the
classification string, so filter names and values never pick the tier.

Keys built by the storefront factories carry an explicit ``KeyNamespace``
tag so classification does not depend on free-text matching. Plain tuples
and strings are still accepted for callers that predate the tags.
"""

from __future__ import annotations

import json
from enum import Enum
from typing import Any, Mapping, Sequence, Union

from querypolicy.errors import PolicyError

KEY_SEPARATOR = "-"

Segment = Union[str, int, Mapping[str, Any]]


class KeyNamespace(str, Enum):
    """Resource namespaces known to the storefront."""

    DRONES = "drones"
    ORDERS = "orders"
    PAYMENTS = "payments"
    DASHBOARD = "dashboard"
    MEDIA = "media"
    USERS = "users"
    UNTAGGED = "untagged"


class TaggedKey(tuple):  # type: ignore[type-arg]
    """
    Cache key tuple with a structural namespace tag.

    Behaves exactly like the tuple of its segments for equality, hashing and
    prefix matching, so tagged and untagged callers share cache entries.
    """

    namespace: KeyNamespace

    def __new__(cls, namespace: KeyNamespace, *segments: Segment) -> "TaggedKey":
        instance = super().__new__(cls, segments)
        instance.namespace = namespace
        return instance

    def extend(self, *segments: Segment) -> "TaggedKey":
        """Return a longer key in the same namespace."""
        return TaggedKey(self.namespace, *self, *segments)

    def __repr__(self) -> str:
        return f"TaggedKey({self.namespace.value}, {tuple(self)!r})"


CacheKey = Union[TaggedKey, Sequence[Segment], str]


def _segment_text(segment: Segment) -> str:
    if isinstance(segment, Mapping):
        return json.dumps(segment, sort_keys=True, separators=(",", ":"), default=str)
    return str(segment)


def as_key(key: CacheKey) -> tuple[Segment, ...]:
    """
    Coerce a caller-supplied key into its canonical tuple form.

    Raises:
        PolicyError: If the key is empty or contains an unsupported segment
    """
    if isinstance(key, TaggedKey):
        segments: tuple[Segment, ...] = key
    elif isinstance(key, str):
        segments = (key,)
    elif isinstance(key, Sequence):
        segments = tuple(key)
    else:
        raise PolicyError(f"Cache key must be a sequence of segments, got {type(key).__name__}")

    if not segments:
        raise PolicyError("Cache key must contain at least one segment")

    for segment in segments:
        if isinstance(segment, bool) or not isinstance(segment, (str, int, Mapping)):
            raise PolicyError(
                f"Unsupported cache key segment {segment!r} ({type(segment).__name__})"
            )
    return segments


def normalize_key(key: CacheKey) -> str:
    """
    Join key segments into the lowercase classification string.

    Mapping segments are skipped.

    Example:
        >>> normalize_key(("Dashboard", "stats"))
        'dashboard-stats'
        >>> normalize_key(("drones", "list", {"filters": {"status": ""}}))
        'drones-list'
    """
    segments = as_key(key)
    return KEY_SEPARATOR.join(str(s) for s in segments if not isinstance(s, Mapping)).lower()


def namespace_of(key: CacheKey) -> KeyNamespace:
    """Return the structural namespace tag, UNTAGGED for plain keys."""
    if isinstance(key, TaggedKey):
        return key.namespace
    return KeyNamespace.UNTAGGED


def hashable_key(key: CacheKey) -> tuple[Any, ...]:
    """Return a hashable identity for a key (mapping segments are frozen)."""
    return tuple(
        _segment_text(s) if isinstance(s, Mapping) else s for s in as_key(key)
    )


def key_starts_with(key: CacheKey, prefix: CacheKey) -> bool:
    """Return True when ``prefix`` is a leading sub-sequence of ``key``."""
    full = hashable_key(key)
    head = hashable_key(prefix)
    return full[: len(head)] == head
