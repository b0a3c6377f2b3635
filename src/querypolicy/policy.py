"""Cache policy derivation per tier and override merging.

This module holds the staleness table for each cache tier and the rules for
layering caller overrides on top of it. Explicit overrides always win over
the derived defaults, field by field.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Mapping, Optional, Union

import yaml  # type: ignore[import-untyped]
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from querypolicy.errors import PolicyError
from querypolicy.keys import CacheKey, as_key, key_starts_with
from querypolicy.retry import GENERIC_RETRY, RetryPolicy
from querypolicy.tiers import Tier

logger = logging.getLogger(__name__)


class CachePolicy(BaseModel):
    """Parameters governing a cached query entry.

    Attributes:
        stale_time: Seconds after which data is stale and refetched on demand.
        gc_time: Seconds an unused entry is kept before eviction.
        refetch_on_focus: Refetch when the window regains focus.
        refetch_on_mount: Refetch whenever a consumer mounts.
        refetch_on_reconnect: Refetch after the network reconnects.
        refetch_interval: Polling interval in seconds, None disables polling.
        enabled: Whether the query may run at all.
        retry: Retry and backoff parameters.
    """

    model_config = ConfigDict(frozen=True)

    stale_time: float = Field(ge=0, description="Stale window in seconds")
    gc_time: float = Field(ge=0, description="Eviction window in seconds")
    refetch_on_focus: bool = Field(default=True)
    refetch_on_mount: bool = Field(default=True)
    refetch_on_reconnect: bool = Field(default=True)
    refetch_interval: Optional[float] = Field(default=None, gt=0)
    enabled: bool = Field(default=True)
    retry: RetryPolicy = Field(default=GENERIC_RETRY)


class PolicyOverrides(BaseModel):
    """Caller-supplied options; every set field replaces the derived value."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    stale_time: Optional[float] = Field(default=None, ge=0)
    gc_time: Optional[float] = Field(default=None, ge=0)
    refetch_on_focus: Optional[bool] = None
    refetch_on_mount: Optional[bool] = None
    refetch_on_reconnect: Optional[bool] = None
    refetch_interval: Optional[float] = Field(default=None, gt=0)
    enabled: Optional[bool] = None
    retry: Optional[RetryPolicy] = None

    def values(self) -> dict[str, Any]:
        """Return only the fields that were set to a value."""
        return {
            name: getattr(self, name)
            for name in type(self).model_fields
            if getattr(self, name) is not None
        }


Overrides = Union[PolicyOverrides, Mapping[str, Any]]


TIER_POLICIES: dict[Tier, CachePolicy] = {
    Tier.STATIC: CachePolicy(stale_time=900, gc_time=3600, refetch_on_focus=True),
    Tier.USER_SCOPED: CachePolicy(stale_time=120, gc_time=600, refetch_on_focus=True),
    Tier.REAL_TIME: CachePolicy(stale_time=30, gc_time=300, refetch_on_focus=False),
    Tier.DEFAULT: CachePolicy(stale_time=300, gc_time=1800, refetch_on_focus=True),
}


def derive_policy(tier: Tier, retry: RetryPolicy = GENERIC_RETRY) -> CachePolicy:
    """
    Return the default cache policy for a tier.

    Args:
        tier: Cache tier selected by ``classify``
        retry: Retry policy to attach (defaults to the generic policy)

    Returns:
        Immutable CachePolicy

    Raises:
        PolicyError: If the tier is unknown

    Example:
        >>> derive_policy(Tier.STATIC).stale_time
        900.0
    """
    try:
        policy = TIER_POLICIES[Tier(tier)]
    except ValueError as e:
        raise PolicyError(f"Unknown cache tier: {tier!r}") from e

    if retry != policy.retry:
        policy = policy.model_copy(update={"retry": retry})
    return policy


def coerce_overrides(overrides: Optional[Overrides]) -> PolicyOverrides:
    """
    Validate an options mapping into PolicyOverrides.

    Raises:
        PolicyError: On unknown fields or invalid values
    """
    if overrides is None:
        return PolicyOverrides()
    if isinstance(overrides, PolicyOverrides):
        return overrides
    if not isinstance(overrides, Mapping):
        raise PolicyError(f"Overrides must be a mapping, got {type(overrides).__name__}")
    try:
        return PolicyOverrides.model_validate(dict(overrides))
    except ValidationError as e:
        raise PolicyError(f"Invalid policy overrides: {e}") from e


def merge_policy(base: CachePolicy, *layers: Optional[Overrides]) -> CachePolicy:
    """
    Apply override layers on top of a base policy, later layers winning.

    Example:
        >>> merge_policy(derive_policy(Tier.STATIC), {"stale_time": 5}).stale_time
        5.0
    """
    update: dict[str, Any] = {}
    for layer in layers:
        update.update(coerce_overrides(layer).values())
    if not update:
        return base
    return base.model_copy(update=update)


class OverrideRule(BaseModel):
    """Overrides applied to every key starting with ``prefix``."""

    model_config = ConfigDict(frozen=True)

    prefix: tuple[Union[str, int], ...]
    overrides: PolicyOverrides


class OverrideTable:
    """
    Ordered per-key-prefix overrides.

    The longest matching prefix wins. Table overrides sit between the derived
    tier policy and the caller's explicit overrides.
    """

    def __init__(self, rules: Optional[list[OverrideRule]] = None) -> None:
        self.rules: list[OverrideRule] = sorted(
            rules or [], key=lambda r: len(r.prefix), reverse=True
        )

    def add(self, prefix: CacheKey, overrides: Overrides) -> None:
        """Register overrides for a key prefix."""
        rule = OverrideRule(
            prefix=tuple(as_key(prefix)),  # type: ignore[arg-type]
            overrides=coerce_overrides(overrides),
        )
        self.rules.append(rule)
        self.rules.sort(key=lambda r: len(r.prefix), reverse=True)

    def lookup(self, key: CacheKey) -> Optional[PolicyOverrides]:
        """Return overrides for the longest matching prefix, if any."""
        for rule in self.rules:
            if key_starts_with(key, rule.prefix):
                return rule.overrides
        return None

    def __len__(self) -> int:
        return len(self.rules)

    @classmethod
    def from_yaml(cls, yaml_path: Path) -> "OverrideTable":
        """
        Load an override table from YAML.

        Expected layout::

            overrides:
              - prefix: [dashboard, stats]
                stale_time: 120
                retry: {max_attempts: 3}

        Raises:
            FileNotFoundError: If the file does not exist
            PolicyError: If the structure is invalid
        """
        if not yaml_path.exists():
            raise FileNotFoundError(f"Override table not found: {yaml_path}")

        with open(yaml_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        if not isinstance(data, dict):
            raise PolicyError(f"Override table must be a mapping in {yaml_path}")

        entries = data.get("overrides", [])
        if not isinstance(entries, list):
            raise PolicyError(f"'overrides' must be a list in {yaml_path}")

        table = cls()
        for entry in entries:
            if not isinstance(entry, dict) or "prefix" not in entry:
                raise PolicyError(f"Each override needs a 'prefix' in {yaml_path}")
            fields = dict(entry)
            prefix = fields.pop("prefix")
            if isinstance(prefix, str):
                prefix = [prefix]
            table.add(prefix, fields)

        logger.info("Loaded %d policy overrides from %s", len(table), yaml_path)
        return table
