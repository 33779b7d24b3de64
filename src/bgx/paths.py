"""Task log layout for bgx."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from bgx.exceptions import ConfigError

LOG_SUFFIX = ".ndjson"
SUPERVISOR_LOG_SUFFIX = ".supervisor.log"


def validate_task_name(task_name: str) -> str:
    """Check that a task name maps to a single file inside the home directory.

    Args:
        task_name: Name given on the command line.

    Returns:
        The unchanged task name.

    Raises:
        ConfigError: If the name is empty or would escape the home directory.
    """
    if not task_name:
        raise ConfigError("task name must not be empty", field="task_name")
    if task_name in (".", "..") or "\0" in task_name:
        msg = f"invalid task name: {task_name!r}"
        raise ConfigError(msg, field="task_name")
    if "/" in task_name or (os.altsep and os.altsep in task_name):
        msg = f"task name must not contain a path separator: {task_name!r}"
        raise ConfigError(msg, field="task_name")
    return task_name


@dataclass(frozen=True)
class TaskPaths:
    """Locates the log file of a named task.

    Attributes:
        home: Directory holding task logs.
        task_name: Unique task name within home.

    Example:
        >>> paths = TaskPaths(Path("/tmp/bgx"), "build")
        >>> paths.log_path
        PosixPath('/tmp/bgx/build.ndjson')
    """

    home: Path
    task_name: str

    def __post_init__(self) -> None:
        validate_task_name(self.task_name)

    @property
    def log_path(self) -> Path:
        """Path to the task's NDJSON journal."""
        return self.home / f"{self.task_name}{LOG_SUFFIX}"

    @property
    def supervisor_log_path(self) -> Path:
        """Path receiving the detached supervisor's own stderr."""
        return self.home / f"{self.task_name}{SUPERVISOR_LOG_SUFFIX}"

    def supervisor_output(self) -> str:
        """Diagnostics left by the detached supervisor, if any."""
        try:
            return self.supervisor_log_path.read_text(encoding="utf-8", errors="replace").strip()
        except FileNotFoundError:
            return ""

    def ensure_home(self) -> None:
        """Create the home directory if it is missing."""
        self.home.mkdir(parents=True, exist_ok=True)

    def exists(self) -> bool:
        """Whether the task's log file exists."""
        return self.log_path.exists()
