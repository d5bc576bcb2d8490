"""
Pytest configuration and fixtures: fake clocks and stub transports.
No test touches the network.
"""

import sys
import threading
from datetime import datetime
from pathlib import Path
from zoneinfo import ZoneInfo

import pytest

# Flat module layout: make `import models` etc. work without installing
sys.path.insert(0, str(Path(__file__).parent))

from dispatcher import AttemptOutcome  # noqa: E402
from models import FailureReason, OutcomeKind  # noqa: E402
from timing import NetworkError  # noqa: E402


def shanghai_ms(*args) -> int:
    """Epoch ms of a wall-clock time in Asia/Shanghai."""
    return round(datetime(*args, tzinfo=ZoneInfo("Asia/Shanghai")).timestamp() * 1000)


class FakeClock:
    """Monotonic clock whose sleep just advances time."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: list[float] = []
        self.on_sleep = None

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.now += seconds
        if self.on_sleep:
            self.on_sleep(len(self.sleeps))


class StubTimeTransport:
    """server -> epoch ms, or an exception instance to raise."""

    def __init__(self, answers: dict):
        self.answers = answers
        self.calls: list[tuple[str, float]] = []

    def query_time(self, server: str, timeout: float) -> int:
        self.calls.append((server, timeout))
        answer = self.answers.get(server, NetworkError("unreachable"))
        if isinstance(answer, Exception):
            raise answer
        return answer


class StubReachability:
    """Replays (duration_ms, result) pairs; result may be an exception.

    Owns a nanosecond counter to pass as the probe clock.
    """

    def __init__(self, samples: list):
        self.samples = list(samples)
        self.calls = 0
        self.now_ns = 5_000_000_000

    def clock(self) -> int:
        return self.now_ns

    def is_reachable(self, host: str, timeout: float) -> bool:
        duration_ms, result = self.samples[self.calls]
        self.calls += 1
        self.now_ns += duration_ms * 1_000_000 + 400_000
        if isinstance(result, Exception):
            raise result
        return result


class StubDispatcher:
    """Returns queued outcomes in order; the last one repeats."""

    def __init__(self, outcomes: list[AttemptOutcome], gate: threading.Event | None = None):
        self.outcomes = list(outcomes)
        self.calls: list[tuple[str, bool]] = []
        self.gate = gate

    def dispatch(self, credential: str, is_retry: bool = False) -> AttemptOutcome:
        if self.gate is not None:
            self.gate.wait(5)
        self.calls.append((credential, is_retry))
        idx = min(len(self.calls), len(self.outcomes)) - 1
        return self.outcomes[idx]


SUCCESS = AttemptOutcome(kind=OutcomeKind.SUCCESS, status_code=200, code=0)
NOT_GRANTED = AttemptOutcome(kind=OutcomeKind.RETRYABLE, reason=FailureReason.NOT_GRANTED, status_code=200, code=0)
NOT_ELIGIBLE = AttemptOutcome(kind=OutcomeKind.TERMINAL, reason=FailureReason.NOT_ELIGIBLE, status_code=200, code=20036)


class RecordingLog:
    def __init__(self):
        self.lines: list[tuple[str, str]] = []

    def __call__(self, message: str, level: str = "info"):
        self.lines.append((message, level))

    def text(self) -> str:
        return "\n".join(m for m, _ in self.lines)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def log():
    return RecordingLog()
