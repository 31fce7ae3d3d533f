"""Configuration schema for gittree.

Defines the remote, commit identity, sync and logging options with types,
defaults and validation. Uses Pydantic for schema enforcement and clear
error messages.
"""

from __future__ import annotations

import re
import warnings
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator


_BRANCH_COMPONENT = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._/-]*$")


def _validate_branch_name(v: str, what: str) -> str:
    if not _BRANCH_COMPONENT.match(v) or ".." in v or v.endswith((".lock", "/", ".")):
        raise ValueError(f"Invalid {what}: {v!r}")
    return v


class RemoteConfig(BaseModel):
    """Remote repository holding the tree."""

    url: str = Field(
        default="",
        description="Git URL (SSH, HTTPS or local path) of the remote",
    )
    name: str = Field(
        default="origin",
        description="Name of the remote in the local working copy",
    )
    branch: str = Field(
        default="main",
        description="Target branch that commits are published to",
    )
    ssh_key: str = Field(
        default="",
        description="Path to SSH private key (empty = use default)",
    )
    token: str = Field(
        default="",
        description="HTTPS access token (empty = rely on credential helpers)",
    )

    @field_validator("branch")
    @classmethod
    def validate_branch(cls, v: str) -> str:
        return _validate_branch_name(v, "branch name")

    @field_validator("ssh_key")
    @classmethod
    def validate_ssh_key(cls, v: str) -> str:
        """Warn if SSH key path doesn't exist."""
        if v:
            path = Path(v).expanduser()
            if not path.exists():
                warnings.warn(
                    f"SSH key path does not exist: {v}",
                    UserWarning,
                )
            elif not path.is_file():
                warnings.warn(
                    f"SSH key path is not a file: {v}",
                    UserWarning,
                )
        return v


class IdentityConfig(BaseModel):
    """Author and committer of the commits gittree creates."""

    name: str = Field(
        default="",
        description="Commit author name (empty = PID<pid> on <hostname>)",
    )
    email: str = Field(
        default="",
        description="Commit author email (empty = <user>@<hostname>)",
    )


class SyncConfig(BaseModel):
    """Commit and publish behavior."""

    publish_prefix: str = Field(
        default="gittree-publish",
        description="Prefix of the disposable branches used to publish commits",
    )
    cleanup_publish_branch: bool = Field(
        default=True,
        description="Delete the disposable branch after each publish attempt",
    )
    commit_message: str = Field(
        default="Wrote to the database",
        description="Default commit message",
    )
    lock_timeout: float = Field(
        default=30.0,
        ge=0,
        description="Seconds to wait for the working copy lock (0 = fail immediately)",
    )
    lock_ttl: int = Field(
        default=60,
        ge=0,
        description="Seconds before a held lock is considered stale (0 = never)",
    )

    @field_validator("publish_prefix")
    @classmethod
    def validate_publish_prefix(cls, v: str) -> str:
        return _validate_branch_name(v, "publish branch prefix")


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Log level",
    )
    dir: str = Field(
        default="",
        description="Log directory (empty = ~/.gittree/logs)",
    )
    max_bytes: int = Field(
        default=10485760,  # 10MB
        ge=0,
        description="Maximum log file size in bytes",
    )
    backup_count: int = Field(
        default=5,
        ge=0,
        description="Number of backup log files to keep",
    )
    disable_file: bool = Field(
        default=False,
        description="Disable file logging (stderr only)",
    )

    @field_validator("dir")
    @classmethod
    def validate_log_dir(cls, v: str) -> str:
        """Warn if log path exists but is not a directory."""
        if v:
            path = Path(v).expanduser()
            if path.exists() and not path.is_dir():
                warnings.warn(
                    f"Log path exists but is not a directory: {v}",
                    UserWarning,
                )
        return v


class GitTreeConfig(BaseModel):
    """Root configuration model."""

    version: int = Field(
        default=1,
        ge=1,
        description="Config schema version",
    )
    workdir: str = Field(
        default="",
        description="Local working copy (empty = ~/.gittree/repos/<remote name>)",
    )

    remote: RemoteConfig = Field(default_factory=RemoteConfig)
    identity: IdentityConfig = Field(default_factory=IdentityConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> "GitTreeConfig":
        """Create config with all defaults."""
        return cls()

    def resolve_workdir(self) -> Path:
        """Working copy location, derived from the remote URL when unset."""
        if self.workdir:
            return Path(self.workdir).expanduser()
        if not self.remote.url:
            raise ValueError("Either workdir or remote.url must be configured")
        stem = re.split(r"[/:\\]", self.remote.url.rstrip("/"))[-1]
        if stem.endswith(".git"):
            stem = stem[: -len(".git")]
        slug = re.sub(r"[^A-Za-z0-9._-]+", "-", stem).strip("-._") or "tree"
        return Path.home() / ".gittree" / "repos" / slug
