"""Custom exceptions for bgx."""

from pathlib import Path


class BgxError(Exception):
    """Base exception for all bgx errors."""

    pass


class ConfigError(BgxError):
    """Raised when configuration or arguments are invalid."""

    def __init__(self, message: str, *, field: str = "") -> None:
        super().__init__(message)
        self.field = field


class DuplicateTaskError(BgxError):
    """Raised when a task name already has a log file."""

    def __init__(
        self,
        message: str,
        *,
        task_name: str = "",
        log_path: Path | None = None,
    ) -> None:
        super().__init__(message)
        self.task_name = task_name
        self.log_path = log_path


class SpawnError(BgxError):
    """Raised when a command cannot be started."""

    def __init__(self, message: str, *, command: list[str] | None = None) -> None:
        super().__init__(message)
        self.command = command or []


class CaptureError(BgxError):
    """Raised when events can no longer be written to the sink."""

    def __init__(self, message: str, *, stream: str = "") -> None:
        super().__init__(message)
        self.stream = stream


class TaskNotFoundError(BgxError):
    """Raised when a task log does not exist."""

    def __init__(
        self,
        message: str,
        *,
        task_name: str = "",
        log_path: Path | None = None,
    ) -> None:
        super().__init__(message)
        self.task_name = task_name
        self.log_path = log_path


class FollowError(BgxError):
    """Raised when a follower cannot recover an exit code."""

    pass


class HeartbeatTimeoutError(FollowError):
    """Raised when no event arrives within the heartbeat timeout."""

    def __init__(self, message: str, *, timeout: float = 0.0) -> None:
        super().__init__(message)
        self.timeout = timeout


class MissingExitEventError(FollowError):
    """Raised when a stream ends before its exit event."""

    pass


class LogTruncatedError(FollowError):
    """Raised when a followed log shrinks below the read offset."""

    def __init__(
        self,
        message: str,
        *,
        log_path: Path | None = None,
        offset: int = 0,
    ) -> None:
        super().__init__(message)
        self.log_path = log_path
        self.offset = offset


class EventParseError(ValueError):
    """Raised when a journal line is not a valid event."""

    def __init__(self, message: str, *, line: str = "") -> None:
        super().__init__(message)
        self.line = line
