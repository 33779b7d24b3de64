"""Tests for process stats providers."""

from __future__ import annotations

import os
from pathlib import Path
from unittest.mock import patch

import psutil
import pytest

from bgx.stats import (
    NullStatsProvider,
    ProcessStats,
    ProcfsStatsProvider,
    PsutilStatsProvider,
    create_stats_provider,
)


def test_null_provider_returns_zeros() -> None:
    assert NullStatsProvider().sample(os.getpid()) == ProcessStats(0.0, 0)


class TestPsutilStatsProvider:
    """Tests for PsutilStatsProvider."""

    def test_samples_current_process(self) -> None:
        stats = PsutilStatsProvider().sample(os.getpid())

        assert stats.cpu_seconds >= 0.0
        assert stats.mem_bytes > 0

    def test_missing_process_gives_zeros(self) -> None:
        provider = PsutilStatsProvider()

        with patch("bgx.stats.psutil.Process", side_effect=psutil.NoSuchProcess(999999)):
            stats = provider.sample(999999)

        assert stats == ProcessStats()


class TestProcfsStatsProvider:
    """Tests for ProcfsStatsProvider against a fake /proc tree."""

    @pytest.fixture
    def proc_root(self, tmp_path: Path) -> Path:
        pid_dir = tmp_path / "1234"
        pid_dir.mkdir()
        (pid_dir / "stat").write_text(
            "1234 (my proc) S 1 1234 1234 0 -1 4194304 100 0 0 0 250 50 0 0 20 0 1 0 100 1000 200\n"
        )
        (pid_dir / "statm").write_text("1000 200 50 1 0 100 0\n")
        return tmp_path

    def test_parses_cpu_and_rss(self, proc_root: Path) -> None:
        provider = ProcfsStatsProvider(proc_root)

        stats = provider.sample(1234)

        assert stats.cpu_seconds == pytest.approx(300 / os.sysconf("SC_CLK_TCK"))
        assert stats.mem_bytes == 200 * os.sysconf("SC_PAGE_SIZE")

    def test_missing_statm_keeps_cpu(self, proc_root: Path) -> None:
        (proc_root / "1234" / "statm").unlink()

        stats = ProcfsStatsProvider(proc_root).sample(1234)

        assert stats.cpu_seconds > 0
        assert stats.mem_bytes == 0

    def test_missing_process_gives_zeros(self, proc_root: Path) -> None:
        assert ProcfsStatsProvider(proc_root).sample(4321) == ProcessStats()


@pytest.mark.parametrize(
    ("name", "expected"),
    [
        ("psutil", PsutilStatsProvider),
        ("procfs", ProcfsStatsProvider),
        ("none", NullStatsProvider),
    ],
)
def test_create_stats_provider(name: str, expected: type) -> None:
    assert isinstance(create_stats_provider(name), expected)


def test_create_unknown_stats_provider() -> None:
    with pytest.raises(ValueError, match="Unknown stats provider"):
        create_stats_provider("perf")
