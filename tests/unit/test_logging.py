"""Unit tests for the logging configuration module."""

from __future__ import annotations

import logging
from unittest.mock import MagicMock, patch

import pytest
import structlog

from release_updater.logging import get_logger, run_context, setup_logging


@pytest.fixture(autouse=True)
def _reset_logging():
    """Reset structlog and root logger state around each test."""
    original_handlers = logging.root.handlers[:]
    original_level = logging.root.level
    logging.root.handlers.clear()
    yield
    structlog.reset_defaults()
    logging.root.handlers.clear()
    logging.root.handlers.extend(original_handlers)
    logging.root.setLevel(original_level)


def _settings(level: str = "INFO", development: bool = False) -> MagicMock:
    mock_settings = MagicMock()
    mock_settings.log_level = level
    mock_settings.is_development = development
    return mock_settings


class TestSetupLogging:
    """Tests for setup_logging function."""

    def test_basic_config_uses_level(self) -> None:
        with patch("release_updater.logging.get_settings", return_value=_settings("DEBUG")):
            with patch("release_updater.logging.logging.basicConfig") as mock_basic:
                setup_logging()

        assert mock_basic.call_args.kwargs["level"] == logging.DEBUG
        assert mock_basic.call_args.kwargs["format"] == "%(message)s"

    def test_invalid_level_defaults_to_info(self) -> None:
        with patch("release_updater.logging.get_settings", return_value=_settings("NOPE")):
            with patch("release_updater.logging.logging.basicConfig") as mock_basic:
                setup_logging()

        assert mock_basic.call_args.kwargs["level"] == logging.INFO

    def test_quiets_http_libraries(self) -> None:
        with patch("release_updater.logging.get_settings", return_value=_settings("DEBUG")):
            setup_logging()

        assert logging.getLogger("httpx").level == logging.WARNING
        assert logging.getLogger("httpcore").level == logging.WARNING

    def test_json_output_goes_to_stderr(self, capsys: pytest.CaptureFixture[str]) -> None:
        with patch("release_updater.logging.get_settings", return_value=_settings()):
            setup_logging()

        get_logger("release_updater.test").info("update_probe", step="one")

        captured = capsys.readouterr()
        assert captured.out == ""
        assert '"event": "update_probe"' in captured.err
        assert '"step": "one"' in captured.err


class TestGetLogger:
    """Tests for get_logger function."""

    def test_events_are_capturable(self) -> None:
        with structlog.testing.capture_logs() as logs:
            get_logger("release_updater.test").warning("preserve_set_empty", dir_name="x")

        assert logs == [{"event": "preserve_set_empty", "dir_name": "x", "log_level": "warning"}]


class TestRunContext:
    """Tests for run_context()."""

    def test_binds_run_fields_inside_block_only(self, tmp_path) -> None:
        logger = get_logger("release_updater.test")

        capture = structlog.testing.LogCapture()
        structlog.configure(processors=[structlog.contextvars.merge_contextvars, capture])

        with run_context("abc123", tmp_path):
            logger.info("inside")
        logger.info("outside")

        logs = capture.entries

        assert logs[0]["run_id"] == "abc123"
        assert logs[0]["root"] == str(tmp_path)
        assert "run_id" not in logs[1]
