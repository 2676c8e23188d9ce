import random

import pytest

from monitor import MonitorState, TickOrchestrator
from storage import init_db

T0 = 1_700_000_000_000  # fixed epoch ms


class FakeClock:
    def __init__(self, t: int = T0):
        self.t = t

    def __call__(self) -> int:
        return self.t

    def advance(self, ms: int) -> int:
        self.t += ms
        return self.t


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def quiet_state():
    """Monitor state with noise suppressed: every sample equals baseline (+ event bias)."""
    return MonitorState(rng=random.Random(0), noise_scale=0.0)


@pytest.fixture
def ticker(quiet_state, clock):
    return TickOrchestrator(quiet_state, interval_ms=1000, clock=clock)


@pytest.fixture
def Session():
    return init_db("sqlite://")
