"""Shared pytest fixtures for hbavs tests.

Ledger time and monitor wall-clock time are both driven by hand so every
test controls exactly where an operator sits relative to its deadline.
"""

from __future__ import annotations

import logging

import pytest

from hbavs.liveness.alerts import MemoryAlertSink
from hbavs.liveness.hooks import RecordingHooks
from hbavs.liveness.ledger import LivenessLedger, RecordingPenaltyAuthority


class ManualClock:
    """Callable clock advanced explicitly by tests."""

    def __init__(self, now: float = 1_000):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> ManualClock:
    """Ledger clock starting at t=1000."""
    return ManualClock(1_000)


@pytest.fixture
def wallclock() -> ManualClock:
    """Monitor wall clock, independent of ledger time."""
    return ManualClock(50_000.0)


@pytest.fixture
def authority() -> RecordingPenaltyAuthority:
    return RecordingPenaltyAuthority()


@pytest.fixture
def hooks() -> RecordingHooks:
    return RecordingHooks()


@pytest.fixture
def ledger(clock, authority, hooks) -> LivenessLedger:
    """Ledger with interval=30, grace=10."""
    return LivenessLedger(30, 10, authority, clock=clock, hooks=hooks)


@pytest.fixture
def sink() -> MemoryAlertSink:
    return MemoryAlertSink()


@pytest.fixture(autouse=True)
def _restore_hbavs_logger():
    """configure_logging() replaces handlers on the shared "hbavs" logger."""
    logger = logging.getLogger("hbavs")
    handlers = list(logger.handlers)
    level = logger.level
    propagate = logger.propagate
    yield
    logger.handlers[:] = handlers
    logger.setLevel(level)
    logger.propagate = propagate
