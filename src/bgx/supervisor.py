"""Producer side: run a command and journal everything it does."""

from __future__ import annotations

import subprocess
import threading
import time
from typing import IO, TYPE_CHECKING

import structlog

from bgx.events import Event, EventType, EventWriter
from bgx.exceptions import CaptureError, ConfigError, DuplicateTaskError
from bgx.infra.command import CommandRunner
from bgx.stats import ProcessStatsProvider, create_stats_provider

if TYPE_CHECKING:
    from bgx.config import BgxConfig
    from bgx.paths import TaskPaths

logger = structlog.get_logger()

# Shell convention for children terminated by a signal.
SIGNAL_EXIT_BASE = 128


def exit_code_from_returncode(returncode: int | None) -> int:
    """Map a Popen return code to a process exit status.

    Args:
        returncode: Popen.returncode (negative for signals, None if unknown).

    Returns:
        The child's exit code, 128 + signal number for a killed child,
        or 1 when the status could not be determined.
    """
    if returncode is None:
        return 1
    if returncode < 0:
        return SIGNAL_EXIT_BASE - returncode
    return returncode


def _decode_line(raw: bytes) -> str:
    text = raw.decode("utf-8", errors="replace")
    if text.endswith("\r\n"):
        text = text[:-2]
    elif text.endswith("\n"):
        text = text[:-1]
    return text + "\n"


class Supervisor:
    """Runs a command and writes its journal to a sink.

    Three worker threads feed one EventWriter: a stdout reader, a stderr
    reader and a heartbeat ticker. The exit event is written only after
    the heartbeat ticker has stopped and both readers have drained, or
    have been left behind because a background process holds the pipes.

    Example:
        >>> supervisor = Supervisor(BgxConfig())
        >>> supervisor.run(["sh", "-c", "echo hi; exit 3"], sys.stdout)
        3
    """

    def __init__(
        self,
        config: BgxConfig,
        *,
        stats_provider: ProcessStatsProvider | None = None,
        runner: CommandRunner | None = None,
    ) -> None:
        """Initialize the supervisor.

        Args:
            config: Effective bgx configuration.
            stats_provider: Heartbeat sampler (defaults to config.stats).
            runner: Process launcher.
        """
        self.config = config
        self.stats_provider = stats_provider or create_stats_provider(config.stats)
        self.runner = runner or CommandRunner()

    def run(self, command: list[str], sink: IO[str]) -> int:
        """Run a command to completion, journaling it to sink.

        Args:
            command: Command and arguments.
            sink: Text stream receiving one event per line.

        Returns:
            Exit code recorded in the exit event.

        Raises:
            ConfigError: If the command is empty.
            SpawnError: If the command cannot be started.
            CaptureError: If the sink fails.
        """
        if not command:
            raise ConfigError("no command specified", field="command")

        writer = EventWriter(sink)
        process = self.runner.spawn_captured(command)
        log = logger.bind(pid=process.pid)

        try:
            writer.write(Event.start(process.pid, command))
        except CaptureError:
            self._abort(process)
            process.communicate()
            raise

        stop_heartbeat = threading.Event()
        readers = [
            threading.Thread(
                target=self._pump,
                args=(process.stdout, EventType.STDOUT, writer, process),
                name="bgx-stdout",
                daemon=True,
            ),
            threading.Thread(
                target=self._pump,
                args=(process.stderr, EventType.STDERR, writer, process),
                name="bgx-stderr",
                daemon=True,
            ),
        ]
        heartbeat = threading.Thread(
            target=self._heartbeat,
            args=(process.pid, writer, stop_heartbeat, process),
            name="bgx-heartbeat",
            daemon=True,
        )

        for thread in readers:
            thread.start()
        heartbeat.start()

        returncode = process.wait()
        log.info("Command finished", returncode=returncode)

        stop_heartbeat.set()
        heartbeat.join()
        self._drain(readers)

        if writer.error is not None:
            raise writer.error

        code = exit_code_from_returncode(returncode)
        writer.write(Event.exit(code))
        return code

    def run_task(self, paths: TaskPaths, command: list[str]) -> int:
        """Run a named task, journaling to its log file.

        The log may already exist as an empty file (the forking process
        reserves it); a log with content belongs to another task.

        Args:
            paths: Task log location.
            command: Command and arguments.

        Returns:
            Exit code recorded in the exit event.

        Raises:
            DuplicateTaskError: If the log already holds events.
        """
        if not command:
            raise ConfigError("no command specified", field="command")

        paths.ensure_home()
        log_path = paths.log_path
        if log_path.exists() and log_path.stat().st_size > 0:
            msg = (
                f"log file already exists: {log_path}\n"
                "Duplicate task name? Remove the file if this is intended."
            )
            raise DuplicateTaskError(msg, task_name=paths.task_name, log_path=log_path)

        logger.info("Supervising task", task=paths.task_name, path=str(log_path))
        with log_path.open("a", encoding="utf-8") as sink:
            return self.run(command, sink)

    def _drain(self, readers: list[threading.Thread]) -> None:
        """Wait for the readers to reach end of output.

        A background process started by the command inherits its pipes and
        can keep them open long after the command exits. Readers still
        blocked after one heartbeat interval are left behind; once the exit
        event is written the writer rejects anything they produce.
        """
        deadline = time.monotonic() + self.config.heartbeat_interval
        for thread in readers:
            thread.join(timeout=max(0.0, deadline - time.monotonic()))

        stuck = [thread.name for thread in readers if thread.is_alive()]
        if stuck:
            logger.warning("Output pipes still open after exit, not waiting", readers=stuck)

    def _pump(
        self,
        stream: IO[bytes] | None,
        kind: EventType,
        writer: EventWriter,
        process: subprocess.Popen[bytes],
    ) -> None:
        """Turn each line of a child stream into an event."""
        if stream is None:
            return
        make_event = Event.stdout if kind is EventType.STDOUT else Event.stderr
        try:
            for raw in iter(stream.readline, b""):
                writer.write(make_event(_decode_line(raw)))
        except CaptureError:
            self._abort(process)
        except (OSError, ValueError) as e:
            logger.warning("Stream read failed", stream=kind.value, error=str(e))
        finally:
            stream.close()

    def _heartbeat(
        self,
        pid: int,
        writer: EventWriter,
        stop_event: threading.Event,
        process: subprocess.Popen[bytes],
    ) -> None:
        """Emit heartbeat events until stopped."""
        while not stop_event.wait(timeout=self.config.heartbeat_interval):
            stats = self.stats_provider.sample(pid)
            try:
                writer.write(Event.heartbeat(stats.cpu_seconds, stats.mem_bytes))
            except CaptureError:
                self._abort(process)
                return

    @staticmethod
    def _abort(process: subprocess.Popen[bytes]) -> None:
        """Kill the child after the journal became unwritable."""
        if process.poll() is not None:
            return
        logger.error("Killing command, journal is unwritable", pid=process.pid)
        try:
            process.kill()
        except ProcessLookupError:
            pass
