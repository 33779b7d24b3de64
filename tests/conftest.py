"""Pytest fixtures for bgx tests."""

from __future__ import annotations

import json
import os
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

import pytest

from bgx.config import BgxConfig
from bgx.events import Event
from bgx.infra.command import CommandRunner
from bgx.stats import ProcessStats


class FakeStatsProvider:
    """Stats provider returning fixed values and recording sampled pids."""

    def __init__(self, cpu_seconds: float = 1.5, mem_bytes: int = 4096) -> None:
        self.stats = ProcessStats(cpu_seconds=cpu_seconds, mem_bytes=mem_bytes)
        self.pids: list[int] = []

    def sample(self, pid: int) -> ProcessStats:
        self.pids.append(pid)
        return self.stats


class FakeClock:
    """Monotonic clock advanced only by its own sleep()."""

    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.now += seconds


def parse_events(text: str) -> list[dict]:
    """Parse NDJSON text into raw dicts."""
    return [json.loads(line) for line in text.splitlines() if line.strip()]


def write_events(path: Path, events: list[Event], *, mode: str = "w") -> None:
    """Write events to a log file, one per line."""
    with path.open(mode, encoding="utf-8") as f:
        for event in events:
            f.write(event.to_json() + "\n")


@pytest.fixture(autouse=True)
def clean_bgx_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep BGX_* variables of the outer shell out of the tests."""
    for name in list(os.environ):
        if name.startswith("BGX_"):
            monkeypatch.delenv(name)


@pytest.fixture
def bgx_home(tmp_path: Path) -> Path:
    """Home directory for task logs (not created)."""
    return tmp_path / "bgx"


@pytest.fixture
def fast_config(bgx_home: Path) -> BgxConfig:
    """Config with short intervals for tests."""
    return BgxConfig(
        home=bgx_home,
        heartbeat_interval=0.05,
        heartbeat_timeout=2.0,
        poll_interval=0.01,
        stats="none",
    )


@pytest.fixture
def fake_stats() -> FakeStatsProvider:
    """Create a FakeStatsProvider."""
    return FakeStatsProvider()


@pytest.fixture
def fake_clock() -> FakeClock:
    """Create a FakeClock."""
    return FakeClock()


@pytest.fixture
def command_runner() -> CommandRunner:
    """Create a CommandRunner instance."""
    return CommandRunner()


@pytest.fixture(autouse=True)
def reset_structlog():
    """Undo structlog configuration done by CLI tests (bound to captured stderr)."""
    yield
    import structlog

    structlog.reset_defaults()
