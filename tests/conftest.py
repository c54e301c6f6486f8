"""Root pytest fixtures for clinic-resilience tests."""

from __future__ import annotations

import random

import pytest

from clinic_resilience.telemetry import ResilienceLogger


class FakeClock:
    """Manually advanced time source (seconds)."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Async sleep that records delays and advances the clock instead of waiting."""

    def __init__(self, clock: FakeClock | None = None) -> None:
        self.delays: list[float] = []
        self._clock = clock

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        if self._clock is not None:
            self._clock.advance(seconds)


@pytest.fixture
def clock() -> FakeClock:
    """Fake clock starting at a fixed epoch."""
    return FakeClock()


@pytest.fixture
def sleep(clock: FakeClock) -> RecordingSleep:
    """Recording sleep bound to the fake clock."""
    return RecordingSleep(clock)


@pytest.fixture
def logger(clock: FakeClock) -> ResilienceLogger:
    """Fresh logger so tests can assert on buffered entries."""
    return ResilienceLogger(clock=clock)


@pytest.fixture
def rng() -> random.Random:
    """Seeded random source."""
    return random.Random(42)
