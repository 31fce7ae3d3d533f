"""Configuration loading and merging for gittree.

Handles TOML loading, config discovery, deep merging, and environment overlay.

Discovery order (later sources override earlier):
1. Built-in defaults
2. User config (~/.gittree/config.toml)
3. Project config (.gittree/config.toml, searched upward)
4. Environment variables (GITTREE_*)
"""

from __future__ import annotations

import os
import sys
import threading
import warnings
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

# TOML loading: tomllib (3.11+) with tomli fallback
if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib  # type: ignore

from pydantic import ValidationError

from .config_schema import GitTreeConfig


CONFIG_FILENAME = "config.toml"

USER_CONFIG_DIR = ".gittree"
PROJECT_CONFIG_DIR = ".gittree"

# Environment variable -> key path in the config dict
ENV_MAPPING: Dict[str, Tuple[str, ...]] = {
    "GITTREE_WORKDIR": ("workdir",),
    # Remote
    "GITTREE_REMOTE_URL": ("remote", "url"),
    "GITTREE_REMOTE_NAME": ("remote", "name"),
    "GITTREE_BRANCH": ("remote", "branch"),
    "GITTREE_SSH_KEY": ("remote", "ssh_key"),
    "GITTREE_TOKEN": ("remote", "token"),
    # Identity
    "GITTREE_AUTHOR": ("identity", "name"),
    "GITTREE_EMAIL": ("identity", "email"),
    # Sync
    "GITTREE_PUBLISH_PREFIX": ("sync", "publish_prefix"),
    "GITTREE_CLEANUP_PUBLISH_BRANCH": ("sync", "cleanup_publish_branch"),
    "GITTREE_COMMIT_MESSAGE": ("sync", "commit_message"),
    "GITTREE_LOCK_TIMEOUT": ("sync", "lock_timeout"),
    "GITTREE_LOCK_TTL": ("sync", "lock_ttl"),
    # Logging
    "GITTREE_LOG_LEVEL": ("logging", "level"),
    "GITTREE_LOG_DIR": ("logging", "dir"),
    "GITTREE_LOG_MAX_BYTES": ("logging", "max_bytes"),
    "GITTREE_LOG_BACKUP_COUNT": ("logging", "backup_count"),
    "GITTREE_LOG_DISABLE_FILE": ("logging", "disable_file"),
}


class ConfigError(Exception):
    """Configuration loading or validation error."""

    pass


def _get_user_config_dir() -> Path:
    """Get user-level config directory (~/.gittree/)."""
    return Path.home() / USER_CONFIG_DIR


def _get_project_config_dir(project_path: Optional[Path] = None) -> Optional[Path]:
    """Search upward from project_path for a .gittree/ directory."""
    if project_path is None:
        project_path = Path.cwd()

    if not project_path.is_absolute():
        project_path = project_path.resolve()

    current = project_path
    while current != current.parent:
        config_dir = current / PROJECT_CONFIG_DIR
        if config_dir.is_dir() and config_dir != _get_user_config_dir():
            return config_dir
        current = current.parent

    return None


def _load_toml(path: Path) -> Dict[str, Any]:
    """Load a TOML file.

    Raises:
        ConfigError: If file cannot be loaded or parsed
    """
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except FileNotFoundError:
        raise ConfigError(f"Config file not found: {path}")
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {path}: {e}")


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge two dictionaries.

    Override values take precedence. Nested dicts are merged recursively.
    Lists are replaced, not merged.
    """
    result = base.copy()

    for key, value in override.items():
        if (
            key in result
            and isinstance(result[key], dict)
            and isinstance(value, dict)
        ):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value

    return result


def _env_to_config_key(env_var: str) -> Tuple[str, ...]:
    """Map an environment variable to its key path (empty when unknown).

    Examples:
        GITTREE_REMOTE_URL -> ("remote", "url")
        GITTREE_WORKDIR -> ("workdir",)
    """
    return ENV_MAPPING.get(env_var, ())


def _apply_env_overlay(config_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Apply environment variable overrides to config dict."""
    result = _deep_merge({}, config_dict)

    for env_var in ENV_MAPPING:
        value = os.getenv(env_var)
        if value is None:
            continue

        *sections, key_name = _env_to_config_key(env_var)

        current = result
        for section in sections:
            current = current.setdefault(section, {})

        # Type conversion happens during Pydantic validation
        current[key_name] = value

    return result


def load_config(
    project_path: Optional[Path] = None,
    skip_env: bool = False,
) -> GitTreeConfig:
    """Load and merge gittree configuration.

    Args:
        project_path: Project directory for config discovery
        skip_env: Skip environment variable overlay

    Raises:
        ConfigError: If config files are invalid
    """
    config_dict: Dict[str, Any] = {}

    user_config_path = _get_user_config_dir() / CONFIG_FILENAME
    if user_config_path.exists():
        try:
            config_dict = _deep_merge(config_dict, _load_toml(user_config_path))
        except ConfigError as e:
            # User config is optional, warn but continue
            warnings.warn(
                f"Skipping invalid user config at {user_config_path}: {e}",
                UserWarning,
            )

    project_config_dir = _get_project_config_dir(project_path)
    if project_config_dir:
        project_config_path = project_config_dir / CONFIG_FILENAME
        if project_config_path.exists():
            try:
                config_dict = _deep_merge(config_dict, _load_toml(project_config_path))
            except ConfigError as e:
                raise ConfigError(f"Invalid project config: {e}") from e

    if not skip_env:
        config_dict = _apply_env_overlay(config_dict)

    try:
        return GitTreeConfig.model_validate(config_dict)
    except ValidationError as e:
        raise ConfigError(f"Config validation failed:\n{e}") from e


def load_env_config() -> GitTreeConfig:
    """Defaults plus GITTREE_* environment overrides, without reading config files.

    Raises:
        ConfigError: If an environment value does not validate
    """
    try:
        return GitTreeConfig.model_validate(_apply_env_overlay({}))
    except ValidationError as e:
        raise ConfigError(f"Config validation failed:\n{e}") from e


def ensure_config_dir(user: bool = True, project_path: Optional[Path] = None) -> Path:
    """Create the user (~/.gittree/) or project (.gittree/) config directory."""
    if user:
        config_dir = _get_user_config_dir()
    else:
        config_dir = (project_path or Path.cwd()) / PROJECT_CONFIG_DIR

    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir


# Global cached config (thread-safe)
_cached_config: Optional[GitTreeConfig] = None
_cached_project_path: Optional[Path] = None
_config_lock = threading.Lock()


def get_config(project_path: Optional[Path] = None, force_reload: bool = False) -> GitTreeConfig:
    """Get cached config, loading if necessary."""
    global _cached_config, _cached_project_path

    normalized_path = project_path.resolve() if project_path and str(project_path) else None

    with _config_lock:
        if (
            force_reload
            or _cached_config is None
            or _cached_project_path != normalized_path
        ):
            _cached_config = load_config(project_path)
            _cached_project_path = normalized_path

        return _cached_config


def clear_config_cache() -> None:
    """Clear cached config (thread-safe)."""
    global _cached_config, _cached_project_path
    with _config_lock:
        _cached_config = None
        _cached_project_path = None
