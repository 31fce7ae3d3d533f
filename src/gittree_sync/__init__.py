"""Git synchronization and the database facade for gittree trees."""

from .git_sync import (  # noqa: F401
    CommitRecord,
    Conflict,
    GitConflict,
    GitSyncError,
    Identity,
    MergeResult,
    PushRejected,
    PushResult,
    RemoteDescriptor,
    Repository,
    RepositoryError,
    SyncEngine,
)
from .db import Database  # noqa: F401
from .observability import configure_logging  # noqa: F401

__all__ = [
    "CommitRecord",
    "Conflict",
    "Database",
    "GitConflict",
    "GitSyncError",
    "Identity",
    "MergeResult",
    "PushRejected",
    "PushResult",
    "RemoteDescriptor",
    "Repository",
    "RepositoryError",
    "SyncEngine",
    "configure_logging",
]
