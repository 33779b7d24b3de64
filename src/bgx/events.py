"""Event model and writer for the NDJSON task journal."""

from __future__ import annotations

import re
import threading
from datetime import UTC, datetime
from enum import Enum
from typing import IO, Any

import structlog
from pydantic import BaseModel, ValidationError, field_validator

from bgx.exceptions import CaptureError, EventParseError

logger = structlog.get_logger()

# RFC3339 timestamps written with nanosecond precision carry more fractional
# digits than datetime can hold.
_FRACTION_RE = re.compile(r"(\.\d{6})\d+")


class EventType(str, Enum):
    """Journal event variants."""

    START = "start"
    STDOUT = "stdout"
    STDERR = "stderr"
    HEARTBEAT = "heartbeat"
    EXIT = "exit"


def _now() -> datetime:
    return datetime.now(tz=UTC)


class Event(BaseModel):
    """A single journal record.

    Only the fields that belong to the event's variant are set; the rest
    stay None and are left out of the serialized line.

    Attributes:
        type: Event variant.
        time: When the event was emitted.
        data: Captured output line (stdout/stderr).
        pid: Child process id (start).
        command: Command vector (start).
        code: Exit code (exit).
        cpu_seconds: Cumulative CPU time (heartbeat).
        mem_bytes: Resident memory (heartbeat).

    Example:
        >>> Event.exit(3).to_json()[:15]
        '{"type":"exit",'
    """

    type: EventType
    time: datetime
    data: str | None = None
    pid: int | None = None
    command: list[str] | None = None
    code: int | None = None
    cpu_seconds: float | None = None
    mem_bytes: int | None = None

    @field_validator("time", mode="before")
    @classmethod
    def trim_fraction(cls, v: Any) -> Any:
        """Accept timestamps with sub-microsecond precision."""
        if isinstance(v, str):
            return _FRACTION_RE.sub(r"\1", v)
        return v

    @classmethod
    def start(cls, pid: int, command: list[str]) -> Event:
        return cls(type=EventType.START, time=_now(), pid=pid, command=list(command))

    @classmethod
    def stdout(cls, data: str) -> Event:
        return cls(type=EventType.STDOUT, time=_now(), data=data)

    @classmethod
    def stderr(cls, data: str) -> Event:
        return cls(type=EventType.STDERR, time=_now(), data=data)

    @classmethod
    def heartbeat(cls, cpu_seconds: float, mem_bytes: int) -> Event:
        return cls(
            type=EventType.HEARTBEAT,
            time=_now(),
            cpu_seconds=cpu_seconds,
            mem_bytes=mem_bytes,
        )

    @classmethod
    def exit(cls, code: int) -> Event:
        return cls(type=EventType.EXIT, time=_now(), code=code)

    @property
    def exit_code(self) -> int:
        """Exit code carried by an exit event (absent means 0)."""
        return self.code or 0

    def to_json(self) -> str:
        """Render the event as a single JSON line (without newline)."""
        return self.model_dump_json(exclude_none=True)

    @classmethod
    def from_json(cls, line: str) -> Event:
        """Parse one journal line.

        Args:
            line: JSON text of a single event.

        Returns:
            Parsed Event.

        Raises:
            EventParseError: If the line is not a valid event.
        """
        try:
            return cls.model_validate_json(line)
        except ValidationError as e:
            msg = f"invalid event: {e.error_count()} error(s): {e.errors()[0]['msg']}"
            raise EventParseError(msg, line=line) from e


class EventWriter:
    """Thread-safe line writer for journal events.

    Every event is written and flushed as one complete line while holding
    the lock. The first sink failure is kept; all later writes fail with
    the same error. Writing the exit event closes the writer.

    Example:
        >>> writer = EventWriter(sys.stdout)
        >>> writer.write(Event.exit(0))
    """

    def __init__(self, sink: IO[str]) -> None:
        """Initialize the writer.

        Args:
            sink: Text stream receiving the journal lines.
        """
        self._sink = sink
        self._lock = threading.Lock()
        self._error: CaptureError | None = None
        self._closed = False

    @property
    def error(self) -> CaptureError | None:
        """The sink failure, if one happened."""
        return self._error

    @property
    def closed(self) -> bool:
        """Whether the exit event has been written."""
        return self._closed

    def write(self, event: Event) -> None:
        """Append one event to the sink.

        Args:
            event: Event to write.

        Raises:
            CaptureError: If the sink failed now or earlier, or the journal
                is already closed.
        """
        line = event.to_json() + "\n"
        with self._lock:
            if self._error is not None:
                raise self._error
            if self._closed:
                msg = f"journal is closed, cannot write {event.type.value} event"
                raise CaptureError(msg, stream=event.type.value)
            try:
                self._sink.write(line)
                self._sink.flush()
            except (OSError, ValueError) as e:
                msg = f"failed to write {event.type.value} event: {e}"
                logger.error("Sink write failed", event=event.type.value, error=str(e))
                self._error = CaptureError(msg, stream=event.type.value)
                raise self._error from e
            if event.type is EventType.EXIT:
                self._closed = True
