"""Process resource sampling for heartbeat events."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import psutil
import structlog

logger = structlog.get_logger()


@dataclass(frozen=True)
class ProcessStats:
    """Resource usage of a process at one point in time."""

    cpu_seconds: float = 0.0
    mem_bytes: int = 0


class ProcessStatsProvider(Protocol):
    """Returns resource usage for a process id."""

    def sample(self, pid: int) -> ProcessStats: ...


class NullStatsProvider:
    """Provider for platforms without process accounting."""

    def sample(self, pid: int) -> ProcessStats:
        return ProcessStats()


class PsutilStatsProvider:
    """Samples CPU time and RSS through psutil.

    Returns zeros once the process is gone or cannot be inspected.
    """

    def __init__(self) -> None:
        self._processes: dict[int, psutil.Process] = {}

    def sample(self, pid: int) -> ProcessStats:
        try:
            process = self._processes.get(pid)
            if process is None:
                process = psutil.Process(pid)
                self._processes[pid] = process
            with process.oneshot():
                times = process.cpu_times()
                rss = process.memory_info().rss
        except psutil.Error as e:
            logger.debug("Stats unavailable", pid=pid, error=str(e))
            self._processes.pop(pid, None)
            return ProcessStats()
        return ProcessStats(cpu_seconds=times.user + times.system, mem_bytes=rss)


class ProcfsStatsProvider:
    """Samples CPU time and RSS from Linux /proc."""

    def __init__(self, proc_root: Path = Path("/proc")) -> None:
        self.proc_root = proc_root
        self._clock_ticks = os.sysconf("SC_CLK_TCK")
        self._page_size = os.sysconf("SC_PAGE_SIZE")

    def sample(self, pid: int) -> ProcessStats:
        base = self.proc_root / str(pid)
        try:
            stat = (base / "stat").read_text()
        except OSError:
            return ProcessStats()

        # comm (field 2) may contain spaces; everything after the last ')'
        # starts at field 3 (state).
        fields = stat[stat.rfind(")") + 2 :].split()
        try:
            utime, stime = int(fields[11]), int(fields[12])
        except (IndexError, ValueError):
            return ProcessStats()
        cpu_seconds = (utime + stime) / self._clock_ticks

        try:
            resident = int((base / "statm").read_text().split()[1])
        except (OSError, IndexError, ValueError):
            return ProcessStats(cpu_seconds=cpu_seconds)

        return ProcessStats(cpu_seconds=cpu_seconds, mem_bytes=resident * self._page_size)


def create_stats_provider(name: str) -> ProcessStatsProvider:
    """Create a stats provider by name.

    Args:
        name: One of "psutil", "procfs" or "none".

    Returns:
        The matching provider.

    Raises:
        ValueError: If the name is unknown.
    """
    if name == "psutil":
        return PsutilStatsProvider()
    if name == "procfs":
        return ProcfsStatsProvider()
    if name == "none":
        return NullStatsProvider()
    msg = f"Unknown stats provider: {name}"
    raise ValueError(msg)
