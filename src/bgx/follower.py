"""Consumer side: replay a task journal and recover its exit code."""

from __future__ import annotations

import os
import sys
import threading
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from pathlib import Path
from queue import Empty, Queue
from typing import IO, TYPE_CHECKING, Any

import structlog

from bgx.events import Event, EventType
from bgx.exceptions import (
    EventParseError,
    FollowError,
    HeartbeatTimeoutError,
    LogTruncatedError,
    MissingExitEventError,
    TaskNotFoundError,
)

if TYPE_CHECKING:
    from bgx.config import BgxConfig
    from bgx.paths import TaskPaths

logger = structlog.get_logger()

_EOF = object()


@dataclass
class LogCursor:
    """Read position in a growing log.

    Each call to read_lines() re-opens the log, seeks to the confirmed
    offset and yields complete lines only. The offset moves past a line
    before it is yielded, so a line is never produced twice; a trailing
    partial line is left for the next call.

    Attributes:
        opener: Returns a fresh binary handle positioned anywhere.
        offset: Byte offset of the first unread line.
        log_path: Path for error messages, if the log is a named file.
    """

    opener: Callable[[], IO[bytes]]
    offset: int = 0
    log_path: Path | None = None

    def read_lines(self) -> Iterator[bytes]:
        """Yield all complete lines currently available."""
        with self.opener() as handle:
            size = os.fstat(handle.fileno()).st_size
            if size < self.offset:
                where = self.log_path or "log"
                msg = f"{where} shrank to {size} bytes, below read offset {self.offset}"
                raise LogTruncatedError(msg, log_path=self.log_path, offset=self.offset)
            handle.seek(self.offset)
            while True:
                line = handle.readline()
                if not line.endswith(b"\n"):
                    return
                self.offset += len(line)
                yield line


@dataclass
class ReplayState:
    """Progress of one replay."""

    last_event_at: float
    exit_code: int | None = None
    events: int = 0
    skipped: int = 0

    @property
    def exited(self) -> bool:
        return self.exit_code is not None


class Follower:
    """Replays journal events to local streams.

    stdout events go to the local stdout and stderr events to the local
    stderr, verbatim. The follower returns the code of the exit event and
    fails if no event arrives within config.heartbeat_timeout before it.

    Example:
        >>> follower = Follower(BgxConfig())
        >>> code = follower.follow_task(TaskPaths(Path("/tmp/bgx"), "build"))
    """

    def __init__(
        self,
        config: BgxConfig,
        *,
        stdout: IO[str] | None = None,
        stderr: IO[str] | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Any] = time.sleep,
    ) -> None:
        """Initialize the follower.

        Args:
            config: Effective bgx configuration.
            stdout: Destination of stdout events (defaults to sys.stdout).
            stderr: Destination of stderr events (defaults to sys.stderr).
            clock: Monotonic time source for the liveness clock.
            sleep: Called between polls of a growing file.
        """
        self.config = config
        self._stdout = stdout
        self._stderr = stderr
        self._clock = clock
        self._sleep = sleep

    @property
    def stdout(self) -> IO[str]:
        return self._stdout if self._stdout is not None else sys.stdout

    @property
    def stderr(self) -> IO[str]:
        return self._stderr if self._stderr is not None else sys.stderr

    def follow_task(self, paths: TaskPaths) -> int:
        """Replay a named task's log.

        A timeout names whatever the detached supervisor wrote to its
        stderr, which usually explains why the log stopped.

        Raises:
            TaskNotFoundError: If the task has no log.
            HeartbeatTimeoutError: If the producer goes silent.
        """
        if not paths.exists():
            msg = f"log file does not exist: {paths.log_path}\nTask '{paths.task_name}' not found"
            raise TaskNotFoundError(msg, task_name=paths.task_name, log_path=paths.log_path)
        try:
            return self.follow_file(paths.log_path)
        except HeartbeatTimeoutError as e:
            diagnostics = paths.supervisor_output()
            if not diagnostics:
                raise
            msg = f"{e}\nSupervisor output ({paths.supervisor_log_path}):\n{diagnostics}"
            raise HeartbeatTimeoutError(msg, timeout=e.timeout) from e

    def follow_file(self, path: Path) -> int:
        """Replay a log file that may still be growing.

        Args:
            path: Path to the NDJSON log.

        Returns:
            Exit code from the exit event.

        Raises:
            TaskNotFoundError: If the file is missing or disappears.
            LogTruncatedError: If the file shrinks below the read offset.
            HeartbeatTimeoutError: If the producer goes silent.
        """

        def opener() -> IO[bytes]:
            try:
                return path.open("rb")
            except FileNotFoundError as e:
                msg = f"log file does not exist: {path}"
                raise TaskNotFoundError(msg, log_path=path) from e

        logger.debug("Following log file", path=str(path))
        return self.follow_handle(opener, log_path=path)

    def follow_handle(
        self,
        opener: Callable[[], IO[bytes]],
        *,
        log_path: Path | None = None,
    ) -> int:
        """Replay a re-openable, seekable log.

        Args:
            opener: Returns a new binary handle on the log for each poll.
            log_path: Path for error messages.

        Returns:
            Exit code from the exit event.
        """
        cursor = LogCursor(opener=opener, log_path=log_path)
        state = ReplayState(last_event_at=self._clock())

        while True:
            progressed = False
            for line in cursor.read_lines():
                self._handle_line(line, state)
                progressed = True

            if state.exited:
                return self._finish(state)

            self._check_liveness(state)
            if not progressed:
                self._sleep(self.config.poll_interval)

    def follow_stream(self, stream: IO[bytes] | IO[str]) -> int:
        """Replay a connected stream until it ends.

        Lines are read on a background thread so the liveness clock keeps
        running while the stream blocks.

        Args:
            stream: Binary or text stream producing journal lines.

        Returns:
            Exit code from the exit event.

        Raises:
            MissingExitEventError: If the stream ends before the exit event.
            HeartbeatTimeoutError: If the producer goes silent.
            FollowError: If reading the stream fails.
        """
        lines: Queue[Any] = Queue()
        reader = threading.Thread(
            target=self._read_stream,
            args=(stream, lines),
            name="bgx-follow",
            daemon=True,
        )
        reader.start()
        state = ReplayState(last_event_at=self._clock())

        while True:
            try:
                item = lines.get(timeout=self.config.poll_interval)
            except Empty:
                if state.exited:
                    return self._finish(state)
                self._check_liveness(state)
                continue

            if item is _EOF:
                if state.exited:
                    return self._finish(state)
                raise MissingExitEventError("unexpected end of stream before exit event")
            if isinstance(item, BaseException):
                msg = f"error reading event stream: {item}"
                raise FollowError(msg) from item

            self._handle_line(item, state)
            if not state.exited:
                self._check_liveness(state)

    @staticmethod
    def _read_stream(stream: IO[bytes] | IO[str], lines: Queue[Any]) -> None:
        try:
            end = stream.read(0)  # b"" or "" depending on the stream mode
            for line in iter(stream.readline, end):
                lines.put(line)
        except (OSError, ValueError) as e:
            lines.put(e)
            return
        lines.put(_EOF)

    def _check_liveness(self, state: ReplayState) -> None:
        silent_for = self._clock() - state.last_event_at
        if silent_for > self.config.heartbeat_timeout:
            logger.error(
                "Heartbeat timeout",
                timeout=self.config.heartbeat_timeout,
                events=state.events,
            )
            msg = f"heartbeat timeout: no events received for {self.config.heartbeat_timeout:g}s"
            raise HeartbeatTimeoutError(msg, timeout=self.config.heartbeat_timeout)

    def _finish(self, state: ReplayState) -> int:
        logger.debug(
            "Replay finished",
            exit_code=state.exit_code,
            events=state.events,
            skipped=state.skipped,
        )
        return state.exit_code if state.exit_code is not None else 1

    def _handle_line(self, raw: bytes | str, state: ReplayState) -> None:
        """Parse one journal line and apply its side effect."""
        text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
        text = text.strip()
        if not text:
            return

        try:
            event = Event.from_json(text)
        except EventParseError as e:
            state.skipped += 1
            logger.warning("Failed to parse event", error=str(e))
            return

        state.last_event_at = self._clock()
        state.events += 1

        if event.type is EventType.STDOUT:
            self.stdout.write(event.data or "")
            self.stdout.flush()
        elif event.type is EventType.STDERR:
            self.stderr.write(event.data or "")
            self.stderr.flush()
        elif event.type is EventType.EXIT:
            if state.exited:
                logger.warning("Ignoring repeated exit event", code=event.exit_code)
                return
            state.exit_code = event.exit_code
        elif event.type is EventType.START:
            logger.debug("Task started", pid=event.pid, command=event.command)
        else:
            logger.debug(
                "Heartbeat",
                cpu_seconds=event.cpu_seconds,
                mem_bytes=event.mem_bytes,
            )
