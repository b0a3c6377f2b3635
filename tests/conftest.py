"""Pytest configuration helpers."""

from __future__ import annotations

import os
from typing import Any, Iterator

import pytest

from querypolicy.config import get_settings


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Async sleep stand-in that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> Any:
        self.delays.append(seconds)


@pytest.fixture(autouse=True)
def isolated_settings() -> Iterator[None]:
    """Keep QUERYPOLICY_* variables from leaking between tests."""
    saved = {k: v for k, v in os.environ.items() if k.startswith("QUERYPOLICY_")}
    for key in saved:
        os.environ.pop(key)
    get_settings.cache_clear()
    try:
        yield
    finally:
        for key in [k for k in os.environ if k.startswith("QUERYPOLICY_")]:
            os.environ.pop(key)
        os.environ.update(saved)
        get_settings.cache_clear()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleeper() -> RecordingSleep:
    return RecordingSleep()
