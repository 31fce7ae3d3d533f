from __future__ import annotations

import json
import logging
import os
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Optional

from gittree.config_schema import LoggingConfig


LOGGER_NAME = "gittree"

# Environment variables for configuration
ENV_LOG_DIR = "GITTREE_LOG_DIR"
ENV_LOG_LEVEL = "GITTREE_LOG_LEVEL"
ENV_LOG_MAX_BYTES = "GITTREE_LOG_MAX_BYTES"
ENV_LOG_BACKUP_COUNT = "GITTREE_LOG_BACKUP_COUNT"
ENV_LOG_DISABLE_FILE = "GITTREE_LOG_DISABLE_FILE"

# Defaults
DEFAULT_LOG_DIR = Path.home() / ".gittree" / "logs"
DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_MAX_BYTES = 10 * 1024 * 1024  # 10 MB
DEFAULT_BACKUP_COUNT = 5

_logger_initialized = False
_session_start = datetime.now(timezone.utc).strftime("%Y-%m-%d_%H%M%S")


def _settings_from_env() -> LoggingConfig:
    """Build logging settings from GITTREE_LOG_* variables."""
    level = os.getenv(ENV_LOG_LEVEL, DEFAULT_LOG_LEVEL).upper()
    if level not in ("DEBUG", "INFO", "WARNING", "ERROR"):
        level = DEFAULT_LOG_LEVEL
    return LoggingConfig(
        level=level,
        dir=os.getenv(ENV_LOG_DIR, ""),
        max_bytes=int(os.getenv(ENV_LOG_MAX_BYTES, DEFAULT_MAX_BYTES)),
        backup_count=int(os.getenv(ENV_LOG_BACKUP_COUNT, DEFAULT_BACKUP_COUNT)),
        disable_file=os.getenv(ENV_LOG_DISABLE_FILE, "").lower() in ("1", "true", "yes"),
    )


def _get_log_file_path(settings: LoggingConfig) -> Optional[Path]:
    """Session log file (gittree_<session>.log), or None when file logging is off."""
    if settings.disable_file:
        return None

    log_dir = Path(settings.dir).expanduser() if settings.dir else DEFAULT_LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)
    return log_dir / f"gittree_{_session_start}.log"


def configure_logging(settings: Optional[LoggingConfig] = None) -> logging.Logger:
    """(Re)initialize the gittree logger.

    Without explicit settings the GITTREE_LOG_* environment variables apply:
    - GITTREE_LOG_DIR: Directory for log files (default: ~/.gittree/logs/)
    - GITTREE_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (default: INFO)
    - GITTREE_LOG_MAX_BYTES: Max log file size before rotation (default: 10MB)
    - GITTREE_LOG_BACKUP_COUNT: Number of backup files to keep (default: 5)
    - GITTREE_LOG_DISABLE_FILE: Set to 1 to disable file logging (stderr only)
    """
    global _logger_initialized
    if settings is None:
        settings = _settings_from_env()

    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    log_level = getattr(logging, settings.level, logging.INFO)
    logger.setLevel(log_level)

    formatter = logging.Formatter(
        "[%(levelname)s %(asctime)s] %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S"
    )

    log_file = _get_log_file_path(settings)
    if log_file:
        file_handler = RotatingFileHandler(
            str(log_file),
            maxBytes=settings.max_bytes,
            backupCount=settings.backup_count,
        )
        file_handler.setFormatter(formatter)
        file_handler.setLevel(log_level)
        logger.addHandler(file_handler)

    # stderr only shows warnings and above
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    stream_handler.setLevel(max(log_level, logging.WARNING))
    logger.addHandler(stream_handler)

    _logger_initialized = True
    return logger


def _get_logger() -> logging.Logger:
    if not _logger_initialized:
        return configure_logging()
    return logging.getLogger(LOGGER_NAME)


def _with_fields(message: str, fields: Dict[str, Any]) -> str:
    if not fields:
        return message
    return f"{message} {json.dumps(fields, separators=(',', ':'), sort_keys=True, default=str)}"


def log_action(
    action: str,
    *,
    outcome: str = "ok",
    duration_ms: Optional[float] = None,
    **fields: Any,
) -> None:
    """Emit one structured JSON log line for an action.

    Args:
        action: Name of the action being logged (e.g. "git.push")
        outcome: Result status ("ok", "error", etc.)
        duration_ms: How long the action took in milliseconds
        **fields: Additional fields to include
    """
    payload: Dict[str, Any] = {
        "ts": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        "action": action,
        "outcome": outcome,
    }
    if duration_ms is not None:
        payload["duration_ms"] = round(duration_ms, 2)
    if fields:
        payload.update(fields)

    _get_logger().info(json.dumps(payload, separators=(",", ":"), sort_keys=True, default=str))


def log_debug(message: str, **fields: Any) -> None:
    """Log a debug message with optional structured fields.

    Only formatted when the logger is enabled for DEBUG.
    """
    logger = _get_logger()
    if logger.isEnabledFor(logging.DEBUG):
        logger.debug(_with_fields(message, fields))


def log_warning(message: str, **fields: Any) -> None:
    """Log a warning message with optional structured fields."""
    _get_logger().warning(_with_fields(message, fields))


def log_error(message: str, **fields: Any) -> None:
    """Log an error message with optional structured fields."""
    _get_logger().error(_with_fields(message, fields))


@contextmanager
def timeit(action: str, **fields: Any):
    """Time a block and emit a structured log on exit.

    On exception, logs outcome="error" with the exception type and re-raises.

    Yields:
        A dict whose entries are added to the log line (e.g. result ids)
    """
    start = time.perf_counter()
    result_info: Dict[str, Any] = {}
    try:
        yield result_info
    except Exception as e:
        duration_ms = (time.perf_counter() - start) * 1000.0
        log_action(
            action,
            outcome="error",
            duration_ms=duration_ms,
            error=type(e).__name__,
            **fields,
        )
        raise
    duration_ms = (time.perf_counter() - start) * 1000.0
    log_action(
        action,
        outcome="ok",
        duration_ms=duration_ms,
        **{**fields, **result_info},
    )
