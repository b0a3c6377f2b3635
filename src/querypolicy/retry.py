"""Retry eligibility and exponential backoff for query loaders."""

from __future__ import annotations

import logging
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from querypolicy.errors import PolicyError, is_client_error

logger = logging.getLogger(__name__)

DEFAULT_BASE_DELAY_MS = 1000
DEFAULT_MAX_DELAY_MS = 30000


class RetryPolicy(BaseModel):
    """Retry configuration with deterministic exponential backoff.

    ``max_attempts`` counts retries after the first failure, so a loader
    guarded by ``RetryPolicy(max_attempts=2)`` runs at most three times.

    Attributes:
        max_attempts: Number of retries allowed after the initial attempt.
        base_delay_ms: Delay before the first retry, in milliseconds.
        max_delay_ms: Ceiling applied to every computed delay.
    """

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=2, ge=0, description="Retries after the first failure")
    base_delay_ms: int = Field(default=DEFAULT_BASE_DELAY_MS, ge=0, description="Base delay in ms")
    max_delay_ms: int = Field(default=DEFAULT_MAX_DELAY_MS, ge=0, description="Delay ceiling in ms")

    def should_retry(self, attempt_index: int, error: Any) -> bool:
        """Decide whether a failed load should be attempted again.

        Client errors (status 400-499) and ``PolicyError`` are never
        retried: a malformed request or key fails the same way every time.

        Args:
            attempt_index: Zero-based index of the failure being judged.
            error: The failure raised by the loader.

        Returns:
            True if the runtime should schedule another attempt.

        Example:
            >>> RetryPolicy().should_retry(0, {"status": 404})
            False
            >>> RetryPolicy().should_retry(1, {"status": 503})
            True
        """
        _check_index(attempt_index)
        if isinstance(error, PolicyError):
            logger.debug("Not retrying policy error at attempt %d", attempt_index)
            return False
        if is_client_error(error):
            logger.debug("Not retrying client error at attempt %d", attempt_index)
            return False
        return attempt_index < self.max_attempts

    def backoff_delay(self, attempt_index: int) -> int:
        """Delay in milliseconds before retry ``attempt_index``.

        ``min(max_delay_ms, base_delay_ms * 2**attempt_index)``, no jitter.

        Example:
            >>> RetryPolicy().backoff_delay(0)
            1000
            >>> RetryPolicy().backoff_delay(5)
            30000
        """
        _check_index(attempt_index)
        return min(self.max_delay_ms, self.base_delay_ms * 2**attempt_index)


def _check_index(attempt_index: int) -> None:
    if isinstance(attempt_index, bool) or not isinstance(attempt_index, int):
        raise PolicyError(f"Attempt index must be an integer, got {attempt_index!r}")
    if attempt_index < 0:
        raise PolicyError(f"Attempt index must be non-negative, got {attempt_index}")


GENERIC_RETRY = RetryPolicy(max_attempts=2, max_delay_ms=30000)
DASHBOARD_STATS_RETRY = RetryPolicy(max_attempts=3, max_delay_ms=30000)
DASHBOARD_ALERTS_RETRY = RetryPolicy(max_attempts=2, max_delay_ms=10000)

RETRY_PRESETS: dict[str, RetryPolicy] = {
    "generic": GENERIC_RETRY,
    "dashboard-stats": DASHBOARD_STATS_RETRY,
    "dashboard-alerts": DASHBOARD_ALERTS_RETRY,
}


def should_retry(attempt_index: int, error: Any, policy: RetryPolicy = GENERIC_RETRY) -> bool:
    """Module-level shortcut for ``policy.should_retry``."""
    return policy.should_retry(attempt_index, error)


def backoff_delay(attempt_index: int, policy: RetryPolicy = GENERIC_RETRY) -> int:
    """Module-level shortcut for ``policy.backoff_delay``."""
    return policy.backoff_delay(attempt_index)
