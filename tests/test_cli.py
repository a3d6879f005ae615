"""Tests for the sshmgr command line entry point."""

from __future__ import annotations

import logging
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import yaml
from click.testing import CliRunner

from sshmgr import __version__
from sshmgr.cli import main, run, setup_logging
from sshmgr.config import AppConfig, StorePaths
from sshmgr.errors import ConfigIOError, RestoreError
from sshmgr.supervisor import SupervisorState


@pytest.fixture(autouse=True)
def _drop_file_handlers():
    """Remove FileHandlers the CLI attaches to the root logger."""
    root = logging.getLogger()
    before = list(root.handlers)
    level = root.level
    yield
    root.setLevel(level)
    for handler in list(root.handlers):
        if handler not in before:
            root.removeHandler(handler)
            handler.close()


@pytest.fixture
def home(tmp_path: Path) -> Path:
    return tmp_path / "home"


def _invoke(home: Path, args: list[str], run_result=0):
    runner = CliRunner()
    with patch("sshmgr.cli.resolve_home", return_value=home), \
            patch("sshmgr.cli.run") as mock_run:
        if isinstance(run_result, Exception):
            mock_run.side_effect = run_result
        else:
            mock_run.return_value = run_result
        result = runner.invoke(main, args)
    return result, mock_run


class TestMain:
    """Option parsing and exit codes."""

    def test_version(self):
        result = CliRunner().invoke(main, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_default_view(self, home: Path):
        result, mock_run = _invoke(home, [])
        assert result.exit_code == 0
        mock_run.assert_called_once_with(home, "connect")
        assert (home / "logs" / "sshmgr.log").exists()

    def test_first_run_writes_default_config(self, home: Path):
        _invoke(home, [])
        data = yaml.safe_load((home / "config.yaml").read_text())
        assert data["sync_backend"] == "http"

    def test_existing_config_left_alone(self, home: Path):
        home.mkdir(parents=True)
        (home / "config.yaml").write_text("log_level: DEBUG\n")
        _invoke(home, [])
        assert (home / "config.yaml").read_text() == "log_level: DEBUG\n"

    def test_edit_view(self, home: Path):
        _, mock_run = _invoke(home, ["--edit"])
        mock_run.assert_called_once_with(home, "edit")

    def test_file_transfer_view(self, home: Path):
        _, mock_run = _invoke(home, ["--file-transfer"])
        mock_run.assert_called_once_with(home, "transfer")

    def test_restore_failure_is_fatal(self, home: Path):
        result, _ = _invoke(home, [], run_result=RestoreError("no .old file"))
        assert result.exit_code == 1
        assert "Restore from backup failed" in result.output

    def test_unusable_store(self, home: Path):
        result, _ = _invoke(home, [], run_result=ConfigIOError("disk full"))
        assert result.exit_code == 1
        assert "Store unusable" in result.output

    def test_uninitializable_home(self, tmp_path: Path):
        blocker = tmp_path / "file"
        blocker.write_text("not a directory")
        result, mock_run = _invoke(blocker / "home", [])
        assert result.exit_code == 1
        mock_run.assert_not_called()


class TestRun:
    """The restart loop around the supervisor."""

    def test_restarts_until_quit(self, tmp_path: Path):
        supervisors = [MagicMock(), MagicMock()]
        supervisors[0].run.return_value = SupervisorState.RESTARTING
        supervisors[1].run.return_value = SupervisorState.QUITTING
        with patch("sshmgr.cli.SessionSupervisor", side_effect=supervisors), \
                patch("sshmgr.cli.ShellInterface") as mock_shell:
            assert run(tmp_path, "edit") == 0
        assert mock_shell.call_count == 2
        assert mock_shell.call_args.kwargs["view"] == "edit"
        for sup in supervisors:
            sup.close.assert_called_once()

    def test_close_runs_on_error(self, tmp_path: Path):
        sup = MagicMock()
        sup.run.side_effect = RestoreError("boom")
        with patch("sshmgr.cli.SessionSupervisor", return_value=sup), \
                patch("sshmgr.cli.ShellInterface") as mock_shell:
            with pytest.raises(RestoreError):
                run(tmp_path, "connect")
        sup.close.assert_called_once()
        mock_shell.return_value.save_history.assert_called_once()


class TestSetupLogging:
    def test_log_file_and_level(self, tmp_path: Path):
        paths = StorePaths.for_home(tmp_path)
        setup_logging(paths, AppConfig(log_level="DEBUG"))
        logging.getLogger("sshmgr.test").debug("hello log")
        for handler in logging.getLogger().handlers:
            handler.flush()
        assert "hello log" in (paths.log_dir / "sshmgr.log").read_text()
        assert logging.getLogger().level == logging.DEBUG

    def test_no_duplicate_handlers(self, tmp_path: Path):
        paths = StorePaths.for_home(tmp_path)
        setup_logging(paths, AppConfig())
        setup_logging(paths, AppConfig())
        target = str(paths.log_dir / "sshmgr.log")
        matching = [
            h for h in logging.getLogger().handlers
            if isinstance(h, logging.FileHandler) and h.baseFilename == target
        ]
        assert len(matching) == 1
