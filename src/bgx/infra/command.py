"""Subprocess launching with logging."""

from __future__ import annotations

import contextlib
import os
import shutil
import subprocess
from pathlib import Path
from typing import IO

import structlog

from bgx.exceptions import SpawnError

logger = structlog.get_logger()


class CommandRunner:
    """Starts subprocesses with consistent logging and error handling.

    All process creation in bgx goes through this class, so tests can
    substitute it and failures always surface as SpawnError.

    Example:
        >>> runner = CommandRunner()
        >>> process = runner.spawn_captured(["echo", "hello"])
        >>> process.stdout.read()
        b'hello\\n'
    """

    def resolve_executable(self, command: list[str]) -> str:
        """Check that the command's executable can be found.

        Args:
            command: Command and arguments.

        Returns:
            Resolved path to the executable.

        Raises:
            SpawnError: If the executable is missing or not executable.
        """
        resolved = shutil.which(command[0])
        if resolved is None:
            msg = f"failed to start command: executable not found: {command[0]}"
            logger.error("Command not found", command=command[0])
            raise SpawnError(msg, command=command)
        return resolved

    def spawn_captured(
        self,
        command: list[str],
        *,
        env: dict[str, str] | None = None,
    ) -> subprocess.Popen[bytes]:
        """Start a command with stdout and stderr on separate pipes.

        Args:
            command: Command and arguments to run.
            env: Environment variables (merged with current env).

        Returns:
            Popen handle with readable stdout and stderr pipes.

        Raises:
            SpawnError: If the command cannot be started.
        """
        log = logger.bind(command=command)

        full_env = os.environ.copy()
        if env:
            full_env.update(env)

        try:
            process = subprocess.Popen(
                command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=full_env,
            )
        except OSError as e:
            log.error("Failed to start command", error=str(e))
            msg = f"failed to start command: {command[0]}: {e.strerror or e}"
            raise SpawnError(msg, command=command) from e

        log.info("Command started", pid=process.pid)
        return process

    def start_detached(
        self,
        command: list[str],
        *,
        env: dict[str, str] | None = None,
        stderr_path: Path | None = None,
    ) -> int:
        """Start a command in a new session and let it go.

        The child has no controlling terminal. Its stdin and stdout point
        at /dev/null, and so does stderr unless stderr_path is given. The
        caller never waits on it.

        Args:
            command: Command and arguments to run.
            env: Environment variables (merged with current env).
            stderr_path: File (truncated) receiving the child's stderr.

        Returns:
            PID of the detached process.

        Raises:
            SpawnError: If the command cannot be started.
        """
        log = logger.bind(command=command)

        full_env = os.environ.copy()
        if env:
            full_env.update(env)

        try:
            with contextlib.ExitStack() as stack:
                stderr: IO[bytes] | int = subprocess.DEVNULL
                if stderr_path is not None:
                    stderr = stack.enter_context(stderr_path.open("wb"))
                process = subprocess.Popen(
                    command,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.DEVNULL,
                    stderr=stderr,
                    env=full_env,
                    close_fds=True,
                    start_new_session=True,
                )
        except OSError as e:
            log.error("Failed to start detached process", error=str(e))
            msg = f"failed to start detached supervisor: {e.strerror or e}"
            raise SpawnError(msg, command=command) from e

        log.info("Detached process started", pid=process.pid)
        return process.pid
