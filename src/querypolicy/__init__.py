"""Query cache policy engine for the drone storefront data layer."""

from __future__ import annotations

from importlib import metadata

from querypolicy.engine import QueryHandle, QueryPolicyEngine, fetch, prefetch
from querypolicy.errors import ClientError, PolicyError, QueryPolicyError, TransientError
from querypolicy.keys import CacheKey, KeyNamespace, TaggedKey, normalize_key
from querypolicy.policy import CachePolicy, OverrideTable, PolicyOverrides, derive_policy
from querypolicy.prefetch import should_prefetch
from querypolicy.retry import RetryPolicy, backoff_delay, should_retry
from querypolicy.runtime import QueryClient, QueryRuntime
from querypolicy.tiers import Tier, classify

__all__ = (
    "__version__",
    "CacheKey",
    "CachePolicy",
    "ClientError",
    "KeyNamespace",
    "OverrideTable",
    "PolicyError",
    "PolicyOverrides",
    "QueryClient",
    "QueryHandle",
    "QueryPolicyEngine",
    "QueryPolicyError",
    "QueryRuntime",
    "RetryPolicy",
    "TaggedKey",
    "Tier",
    "TransientError",
    "backoff_delay",
    "classify",
    "derive_policy",
    "fetch",
    "normalize_key",
    "prefetch",
    "should_prefetch",
    "should_retry",
)


def _detect_version() -> str:
    """Return the installed package version or a placeholder during development."""
    try:
        return metadata.version("querypolicy")
    except metadata.PackageNotFoundError:
        return "0.0.0"


__version__ = _detect_version()
