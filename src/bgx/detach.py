"""Named-task forking: reserve the log and hand off to a detached supervisor."""

from __future__ import annotations

import sys
from typing import TYPE_CHECKING

import structlog

from bgx.exceptions import ConfigError, DuplicateTaskError, SpawnError
from bgx.infra.command import CommandRunner
from bgx.paths import TaskPaths

if TYPE_CHECKING:
    from bgx.config import BgxConfig

logger = structlog.get_logger()


def _duplicate(paths: TaskPaths) -> DuplicateTaskError:
    msg = (
        f"log file already exists: {paths.log_path}\n"
        "Duplicate task name? Remove the file if this is intended."
    )
    return DuplicateTaskError(msg, task_name=paths.task_name, log_path=paths.log_path)


def supervise_command(config: BgxConfig, task_name: str, command: list[str]) -> list[str]:
    """Build the argv that re-invokes bgx as the detached supervisor.

    Settings are passed as explicit options so the detached copy does not
    depend on the environment it inherits.
    """
    return [
        sys.executable,
        "-m",
        "bgx",
        "supervise",
        "--task-name",
        task_name,
        "--home",
        str(config.home),
        "--heartbeat-interval",
        str(config.heartbeat_interval),
        "--heartbeat-timeout",
        str(config.heartbeat_timeout),
        "--stats",
        config.stats,
        "--",
        *command,
    ]


def fork_detached(
    config: BgxConfig,
    task_name: str,
    command: list[str],
    *,
    runner: CommandRunner | None = None,
) -> TaskPaths:
    """Start a named task in the background.

    The log file is created here, exclusively, before the supervisor is
    launched. A concurrent fork with the same name therefore fails, and a
    follower started right after this returns finds the file. The
    supervisor's own stderr goes to paths.supervisor_log_path.

    Args:
        config: Effective bgx configuration.
        task_name: Unique task name within config.home.
        command: Command and arguments.
        runner: Process launcher.

    Returns:
        TaskPaths of the started task.

    Raises:
        ConfigError: If the command is empty or the task name is invalid.
        DuplicateTaskError: If a log for this task name already exists.
        SpawnError: If the executable is missing or the supervisor
            cannot be started.
    """
    if not command:
        raise ConfigError("no command specified", field="command")

    runner = runner or CommandRunner()
    paths = TaskPaths(config.home, task_name)
    log = logger.bind(task=task_name, path=str(paths.log_path))

    try:
        paths.ensure_home()
    except OSError as e:
        msg = f"failed to create home directory {config.home}: {e.strerror or e}"
        raise ConfigError(msg, field="home") from e

    if paths.exists():
        raise _duplicate(paths)

    runner.resolve_executable(command)

    try:
        paths.log_path.open("x", encoding="utf-8").close()
    except FileExistsError as e:
        raise _duplicate(paths) from e
    except OSError as e:
        msg = f"failed to create log file {paths.log_path}: {e.strerror or e}"
        raise ConfigError(msg, field="home") from e

    try:
        pid = runner.start_detached(
            supervise_command(config, task_name, command),
            stderr_path=paths.supervisor_log_path,
        )
    except SpawnError:
        # Only the reservation made above is removed; it holds no events.
        paths.log_path.unlink(missing_ok=True)
        paths.supervisor_log_path.unlink(missing_ok=True)
        raise

    log.info("Task forked", supervisor_pid=pid)
    return paths
