import json
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

import pytest

from gittree.config_schema import LoggingConfig
from gittree_sync import observability as obs
from gittree_sync.observability import (
    LOGGER_NAME,
    configure_logging,
    log_action,
    log_debug,
    log_error,
    log_warning,
    timeit,
)


@pytest.fixture(autouse=True)
def reset_logger():
    """Reset logger state between tests."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.handlers.clear()
    obs._logger_initialized = False
    yield
    for handler in list(logger.handlers):
        handler.close()
    logger.handlers.clear()
    obs._logger_initialized = False


def last_json(caplog) -> dict:
    return json.loads(caplog.records[-1].message)


def test_log_action_emits_json(caplog):
    caplog.set_level(logging.INFO, logger=LOGGER_NAME)
    log_action("git.push", outcome="ok", duration_ms=123, branch="main", commit="abc")
    data = last_json(caplog)
    assert data["action"] == "git.push"
    assert data["outcome"] == "ok"
    assert data["duration_ms"] == 123
    assert data["branch"] == "main"
    assert data["commit"] == "abc"
    assert data["ts"].endswith("Z")


def test_timeit_success_includes_result_info(caplog):
    caplog.set_level(logging.INFO, logger=LOGGER_NAME)
    with timeit("sync.commit", branch="main") as info:
        info["sha"] = "deadbeef"
    data = last_json(caplog)
    assert data["action"] == "sync.commit"
    assert data["outcome"] == "ok"
    assert data["branch"] == "main"
    assert data["sha"] == "deadbeef"
    assert isinstance(data["duration_ms"], (int, float))


def test_timeit_error_logs_and_reraises(caplog):
    caplog.set_level(logging.INFO, logger=LOGGER_NAME)
    with pytest.raises(RuntimeError):
        with timeit("sync.push", branch="main"):
            raise RuntimeError("boom")
    data = last_json(caplog)
    assert data["outcome"] == "error"
    assert data["error"] == "RuntimeError"
    assert data["branch"] == "main"


def test_messages_carry_fields(caplog, monkeypatch):
    monkeypatch.setenv("GITTREE_LOG_LEVEL", "DEBUG")
    caplog.set_level(logging.DEBUG, logger=LOGGER_NAME)
    log_debug("debug line", step=1)
    log_warning("warning line", path="f")
    log_error("error line")
    messages = [r.message for r in caplog.records]
    assert messages[-3] == 'debug line {"step":1}'
    assert messages[-2] == 'warning line {"path":"f"}'
    assert messages[-1] == "error line"


def test_configure_logging_without_file(tmp_path: Path):
    logger = configure_logging(LoggingConfig(level="DEBUG", dir=str(tmp_path), disable_file=True))
    assert logger.level == logging.DEBUG
    assert not any(isinstance(h, RotatingFileHandler) for h in logger.handlers)
    stream = [h for h in logger.handlers if isinstance(h, logging.StreamHandler)]
    assert stream and stream[0].level == logging.WARNING
    assert list(tmp_path.iterdir()) == []


def test_configure_logging_writes_file(tmp_path: Path):
    logger = configure_logging(LoggingConfig(level="INFO", dir=str(tmp_path / "logs")))
    assert any(isinstance(h, RotatingFileHandler) for h in logger.handlers)
    log_action("db.open", path="/tmp/x")
    for handler in logger.handlers:
        handler.flush()
    files = list((tmp_path / "logs").glob("gittree_*.log"))
    assert len(files) == 1
    assert '"action":"db.open"' in files[0].read_text()


def test_reconfigure_replaces_handlers(tmp_path: Path):
    configure_logging(LoggingConfig(disable_file=True))
    logger = configure_logging(LoggingConfig(disable_file=True))
    assert len(logger.handlers) == 1


def test_invalid_env_level_falls_back(monkeypatch):
    monkeypatch.setenv("GITTREE_LOG_LEVEL", "chatty")
    assert obs._settings_from_env().level == "INFO"
    monkeypatch.setenv("GITTREE_LOG_LEVEL", "debug")
    assert obs._settings_from_env().level == "DEBUG"
