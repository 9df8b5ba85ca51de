from pathlib import Path

import pytest
from prometheus_client import CollectorRegistry

from quotawatch.state import JsonStateFile


class FakeClock:
    """
    a controllable epoch-milliseconds clock.
    """

    def __init__(self, now_ms: "int" = 1_767_225_600_000) -> "None":
        self.now_ms = now_ms

    def __call__(self) -> "int":
        return self.now_ms

    def advance(self, ms: "int") -> "None":
        self.now_ms += ms


@pytest.fixture()
def registry() -> "CollectorRegistry":
    """
    fresh Prometheus registry to avoid cross-test state.
    """
    return CollectorRegistry()


@pytest.fixture()
def clock() -> "FakeClock":
    return FakeClock()


@pytest.fixture()
def history_state(tmp_path: "Path") -> "JsonStateFile":
    return JsonStateFile(tmp_path / "state" / "history.json")


@pytest.fixture()
def alert_state(tmp_path: "Path") -> "JsonStateFile":
    return JsonStateFile(tmp_path / "state" / "alerts.json")
