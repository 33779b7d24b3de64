"""CLI interface for bgx."""

from __future__ import annotations

import logging
import os
import stat
import sys
from pathlib import Path
from typing import Annotated

import structlog
import typer

from bgx import __version__
from bgx.config import BgxConfig, LogLevel, resolve_config
from bgx.detach import fork_detached
from bgx.exceptions import BgxError
from bgx.follower import Follower
from bgx.paths import TaskPaths
from bgx.supervisor import Supervisor

logger = structlog.get_logger()

app = typer.Typer(
    name="bgx",
    help="Background task executor with structured logging",
    no_args_is_help=True,
)

# Everything after the first positional argument belongs to the command.
COMMAND_CONTEXT = {"allow_interspersed_args": False}

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def configure_logging(level: LogLevel) -> None:
    """Send structlog output to stderr.

    stdout is reserved for the event stream (fork) and replayed output (join).
    """
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S"),
            structlog.dev.ConsoleRenderer(colors=False),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(_LEVELS[level]),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )


def _load_config(config_path: Path | None, **overrides: object) -> BgxConfig:
    config = resolve_config(config_path, **overrides)
    configure_logging(config.log_level)
    return config


def _fail(error: BgxError) -> typer.Exit:
    typer.echo(f"Error: {error}", err=True)
    return typer.Exit(1)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"bgx version {__version__}")
        raise typer.Exit()


HomeOption = Annotated[
    Path | None,
    typer.Option(
        "--home",
        help="Directory for log files (default: $BGX_HOME or /tmp/bgx)",
        file_okay=False,
    ),
]
ConfigOption = Annotated[
    Path | None,
    typer.Option(
        "--config",
        "-c",
        help="Path to a bgx.yaml config file",
        exists=True,
        dir_okay=False,
        resolve_path=True,
    ),
]
TaskNameOption = Annotated[
    str | None,
    typer.Option("--task-name", "-t", help="Name of the background task"),
]


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-v",
            help="Show version and exit.",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """bgx - run commands in the background and replay them later.

    Named task mode (detached):

        bgx fork --task-name task1 -- sleep 10

        bgx join --task-name task1

    Stdio mode (pipelined):

        bgx fork sleep 10 > task1.log

        tail -f task1.log | bgx join
    """
    pass


@app.command(context_settings=COMMAND_CONTEXT)
def fork(
    command: Annotated[
        list[str] | None,
        typer.Argument(help="Command to run, optionally after --"),
    ] = None,
    task_name: TaskNameOption = None,
    home: HomeOption = None,
    config: ConfigOption = None,
) -> None:
    """Run a command and journal its output as NDJSON events.

    With --task-name the command runs detached and its log is written to
    <home>/<task-name>.ndjson. Without it the command runs in the
    foreground and events go to stdout.
    """
    command = command or []
    try:
        cfg = _load_config(config, home=home)

        if task_name is not None:
            paths = fork_detached(cfg, task_name, command)
            typer.echo(f"Started task '{task_name}' (log: {paths.log_path})", err=True)
            typer.echo(f"To monitor: bgx join --task-name {task_name}", err=True)
            return

        Supervisor(cfg).run(command, sys.stdout)
    except BgxError as e:
        raise _fail(e) from e


@app.command(hidden=True, context_settings=COMMAND_CONTEXT)
def supervise(
    command: Annotated[list[str] | None, typer.Argument()] = None,
    task_name: Annotated[str, typer.Option("--task-name")] = "",
    home: Annotated[Path | None, typer.Option("--home")] = None,
    heartbeat_interval: Annotated[
        float | None, typer.Option("--heartbeat-interval")
    ] = None,
    heartbeat_timeout: Annotated[
        float | None, typer.Option("--heartbeat-timeout")
    ] = None,
    stats: Annotated[str | None, typer.Option("--stats")] = None,
) -> None:
    """Detached worker started by `bgx fork --task-name`."""
    try:
        cfg = _load_config(
            None,
            home=home,
            heartbeat_interval=heartbeat_interval,
            heartbeat_timeout=heartbeat_timeout,
            stats=stats,
        )
        Supervisor(cfg).run_task(TaskPaths(cfg.home, task_name), command or [])
    except BgxError as e:
        logger.error("Supervisor failed", task=task_name, error=str(e))
        raise _fail(e) from e


@app.command()
def join(
    task_name: TaskNameOption = None,
    home: HomeOption = None,
    config: ConfigOption = None,
) -> None:
    """Replay a task's output and exit with its exit code.

    With --task-name the task's log file is tailed until its exit event.
    Without it events are read from stdin.
    """
    try:
        cfg = _load_config(config, home=home)
        follower = Follower(cfg)

        if task_name is not None:
            code = follower.follow_task(TaskPaths(cfg.home, task_name))
        else:
            code = _follow_stdin(follower)
    except BgxError as e:
        raise _fail(e) from e
    except KeyboardInterrupt:
        typer.echo("\nStopped following.", err=True)
        raise typer.Exit(130) from None

    raise typer.Exit(code)


def _follow_stdin(follower: Follower) -> int:
    """Tail stdin as a file when it is one, otherwise consume it as a stream."""
    stdin = sys.stdin
    try:
        fd = stdin.fileno()
    except (AttributeError, OSError, ValueError):
        return follower.follow_stream(getattr(stdin, "buffer", stdin))

    if stat.S_ISREG(os.fstat(fd).st_mode):
        return follower.follow_handle(lambda: os.fdopen(os.dup(fd), "rb"))
    # Private handle: the reader thread may still block on it at shutdown,
    # which must not hold the lock of sys.stdin.
    return follower.follow_stream(os.fdopen(os.dup(fd), "rb"))
