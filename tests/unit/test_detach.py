"""Tests for named-task forking."""

from __future__ import annotations

import sys
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from bgx.config import BgxConfig
from bgx.detach import fork_detached, supervise_command
from bgx.exceptions import ConfigError, DuplicateTaskError, SpawnError
from bgx.infra.command import CommandRunner


@pytest.fixture
def mock_runner() -> MagicMock:
    """CommandRunner whose detached launches never start anything."""
    runner = MagicMock(spec=CommandRunner)
    runner.start_detached.return_value = 4242
    runner.resolve_executable.return_value = "/bin/sh"
    return runner


def test_fork_reserves_log_and_starts_supervisor(
    fast_config: BgxConfig, mock_runner: MagicMock
) -> None:
    command = ["sh", "-c", "echo hi; exit 3"]

    paths = fork_detached(fast_config, "t1", command, runner=mock_runner)

    assert paths.log_path == fast_config.home / "t1.ndjson"
    assert paths.log_path.exists()
    assert paths.log_path.read_text() == ""
    argv = mock_runner.start_detached.call_args.args[0]
    assert argv[:4] == [sys.executable, "-m", "bgx", "supervise"]
    assert argv[argv.index("--task-name") + 1] == "t1"
    assert argv[argv.index("--home") + 1] == str(fast_config.home)
    assert argv[argv.index("--") + 1 :] == command
    assert mock_runner.start_detached.call_args.kwargs["stderr_path"] == (
        fast_config.home / "t1.supervisor.log"
    )


def test_fork_creates_home(fast_config: BgxConfig, mock_runner: MagicMock) -> None:
    assert not fast_config.home.exists()

    fork_detached(fast_config, "t1", ["true"], runner=mock_runner)

    assert fast_config.home.is_dir()


def test_empty_command_has_no_side_effects(
    fast_config: BgxConfig, mock_runner: MagicMock
) -> None:
    with pytest.raises(ConfigError, match="no command"):
        fork_detached(fast_config, "empty", [], runner=mock_runner)

    assert not fast_config.home.exists()
    mock_runner.start_detached.assert_not_called()


def test_duplicate_task_name(fast_config: BgxConfig, mock_runner: MagicMock) -> None:
    fork_detached(fast_config, "dup", ["true"], runner=mock_runner)

    with pytest.raises(DuplicateTaskError, match="already exists") as exc_info:
        fork_detached(fast_config, "dup", ["true"], runner=mock_runner)

    assert exc_info.value.log_path == fast_config.home / "dup.ndjson"
    assert mock_runner.start_detached.call_count == 1


def test_existing_log_is_not_overwritten(
    fast_config: BgxConfig, mock_runner: MagicMock
) -> None:
    fast_config.home.mkdir(parents=True)
    log_path = fast_config.home / "old.ndjson"
    log_path.write_text('{"type":"start"}\n')

    with pytest.raises(DuplicateTaskError, match="Duplicate task name"):
        fork_detached(fast_config, "old", ["true"], runner=mock_runner)

    assert log_path.read_text() == '{"type":"start"}\n'
    mock_runner.start_detached.assert_not_called()


def test_concurrent_reservation_loses(fast_config: BgxConfig, mock_runner: MagicMock) -> None:
    real_open = Path.open

    def racing_open(self: Path, mode: str = "r", *args, **kwargs):
        if mode == "x":
            raise FileExistsError(17, "File exists")
        return real_open(self, mode, *args, **kwargs)

    with patch.object(Path, "open", racing_open):
        with pytest.raises(DuplicateTaskError):
            fork_detached(fast_config, "race", ["true"], runner=mock_runner)

    mock_runner.start_detached.assert_not_called()


def test_missing_executable(fast_config: BgxConfig) -> None:
    runner = CommandRunner()

    with patch.object(runner, "start_detached") as start_detached:
        with pytest.raises(SpawnError, match="bgx-no-such-binary"):
            fork_detached(fast_config, "t1", ["bgx-no-such-binary"], runner=runner)

    start_detached.assert_not_called()
    assert not (fast_config.home / "t1.ndjson").exists()


def test_supervisor_start_failure_releases_reservation(
    fast_config: BgxConfig, mock_runner: MagicMock
) -> None:
    def fail_to_start(argv: list[str], *, stderr_path: Path) -> int:
        stderr_path.write_text("")
        raise SpawnError("failed to start detached supervisor")

    mock_runner.start_detached.side_effect = fail_to_start

    with pytest.raises(SpawnError):
        fork_detached(fast_config, "t1", ["true"], runner=mock_runner)

    assert not (fast_config.home / "t1.ndjson").exists()
    assert not (fast_config.home / "t1.supervisor.log").exists()


def test_invalid_task_name(fast_config: BgxConfig, mock_runner: MagicMock) -> None:
    with pytest.raises(ConfigError, match="path separator"):
        fork_detached(fast_config, "../escape", ["true"], runner=mock_runner)

    mock_runner.start_detached.assert_not_called()


def test_supervise_command_passes_timing(fast_config: BgxConfig) -> None:
    argv = supervise_command(fast_config, "t1", ["make", "--jobs", "4"])

    assert argv[argv.index("--heartbeat-interval") + 1] == "0.05"
    assert argv[argv.index("--heartbeat-timeout") + 1] == "2.0"
    assert argv[argv.index("--stats") + 1] == "none"
    assert argv[-4:] == ["--", "make", "--jobs", "4"]
