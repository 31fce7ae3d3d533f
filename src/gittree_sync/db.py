"""Database facade: a reactive tree value backed by a git working copy.

Opening a database clones (or reuses) the working copy, reads it into a lazy
tree and binds a ValueStore to it, so every store mutation lands on disk.
commit() and push() turn those files into commits and publish them.
"""

from __future__ import annotations

import asyncio
import threading
from pathlib import Path
from typing import Any, Callable, Optional

from gittree.config_loader import get_config, load_env_config
from gittree.config_schema import GitTreeConfig
from gittree.fs import read
from gittree.lock import AdvisoryLock
from gittree.store import StoreBinder, ValueStore

from .git_sync import CommitRecord, Identity, PushResult, RemoteDescriptor, Repository, SyncEngine
from .observability import configure_logging, log_action, log_debug


LOCK_FILENAME = "gittree.lock"


class Database:
    """A tree value mirrored to a git working copy.

    Thread Safety:
        commit/push/sync and writes through the store are serialized by an
        in-process lock; the advisory lock in the .git directory keeps other
        processes from committing or pushing the same working copy meanwhile.
    """

    def __init__(
        self,
        repository: Repository,
        engine: SyncEngine,
        store: ValueStore,
        binder: StoreBinder,
        *,
        config: GitTreeConfig,
        value_type: Optional[Callable[[Any], Any]] = None,
        lock: Optional[threading.RLock] = None,
    ):
        self.repository = repository
        self.engine = engine
        self.store = store
        self.binder = binder
        self.config = config
        self._value_type = value_type
        self._lock = lock or threading.RLock()
        self._closed = False

    @classmethod
    def open(
        cls,
        remote: RemoteDescriptor,
        local_path: Path,
        *,
        value_type: Optional[Callable[[Any], Any]] = None,
        identity: Optional[Identity] = None,
        config: Optional[GitTreeConfig] = None,
    ) -> "Database":
        """Open the working copy of ``remote`` at ``local_path``.

        Args:
            remote: Remote repository and target branch
            local_path: Working copy location (cloned when missing)
            value_type: Converts the lazy tree read from disk into the value
                the store holds (e.g. ``to_plain``); the tree itself by default
            identity: Commit author/committer; host-derived when omitted
            config: Sync options; defaults plus GITTREE_* variables when omitted

        Raises:
            RepositoryError: If the working copy cannot be cloned or pulled
        """
        config = config or load_env_config()
        identity = identity or Identity.from_host()

        repository = Repository.open(remote, Path(local_path))
        engine = SyncEngine(
            repository,
            identity,
            branch=remote.branch,
            publish_prefix=config.sync.publish_prefix,
            cleanup_publish_branch=config.sync.cleanup_publish_branch,
        )
        lock = threading.RLock()
        tree = read(repository.workdir)
        # One lock for store mutations, disk writes and commit/push.
        store = ValueStore(value_type(tree) if value_type else tree, lock=lock)
        binder = StoreBinder(store, repository.workdir, lock=lock)
        log_action("db.open", url=remote.url, branch=remote.branch, path=str(repository.workdir))
        return cls(
            repository,
            engine,
            store,
            binder,
            config=config,
            value_type=value_type,
            lock=lock,
        )

    @classmethod
    def from_config(
        cls,
        config: Optional[GitTreeConfig] = None,
        *,
        value_type: Optional[Callable[[Any], Any]] = None,
    ) -> "Database":
        """Open the database described by ``config`` (loaded from files/env when omitted)."""
        config = config or get_config()
        configure_logging(config.logging)

        if not config.remote.url:
            raise ValueError("remote.url must be configured")
        remote = RemoteDescriptor(
            url=config.remote.url,
            branch=config.remote.branch,
            name=config.remote.name,
            ssh_key_path=Path(config.remote.ssh_key).expanduser() if config.remote.ssh_key else None,
            token=config.remote.token or None,
        )

        host = Identity.from_host()
        identity = Identity(
            name=config.identity.name or host.name,
            email=config.identity.email or host.email,
        )
        return cls.open(
            remote,
            config.resolve_workdir(),
            value_type=value_type,
            identity=identity,
            config=config,
        )

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def value(self) -> Any:
        return self.store.value

    @property
    def path(self) -> Path:
        return self.repository.workdir

    @property
    def has_changes(self) -> bool:
        return self.binder.has_changes

    def _sync_lock(self, operation: str) -> AdvisoryLock:
        return AdvisoryLock(
            self.repository.git_dir / LOCK_FILENAME,
            ttl=self.config.sync.lock_ttl,
            timeout=self.config.sync.lock_timeout,
            operation=operation,
        )

    def _check_open(self) -> None:
        if self._closed:
            raise RuntimeError("Database is closed")

    # ------------------------------------------------------------------
    # Synchronization
    # ------------------------------------------------------------------

    def commit(self, message: Optional[str] = None) -> CommitRecord:
        """Commit the working copy; the current value becomes the synchronized snapshot."""
        self._check_open()
        with self._lock, self._sync_lock("commit"):
            record = self.engine.commit(message or self.config.sync.commit_message)
            self.binder.mark_synchronized()
        return record

    def push(self) -> PushResult:
        """Publish the committed history; re-reads the tree if the branch moved."""
        self._check_open()
        with self._lock, self._sync_lock("push"):
            result = self.engine.push()
            if result.fast_forwarded:
                self._reload()
        return result

    def sync(self, message: Optional[str] = None) -> PushResult:
        """Commit, then push."""
        with self._lock:
            self.commit(message)
            return self.push()

    def _reload(self) -> None:
        tree = read(self.repository.workdir)
        value = self._value_type(tree) if self._value_type else tree
        self.store.reset(value)
        self.binder.reset(value)
        log_debug("Reloaded tree after fast-forward", path=str(self.repository.workdir))

    async def commit_async(self, message: Optional[str] = None) -> CommitRecord:
        return await asyncio.to_thread(self.commit, message)

    async def push_async(self) -> PushResult:
        return await asyncio.to_thread(self.push)

    async def sync_async(self, message: Optional[str] = None) -> PushResult:
        return await asyncio.to_thread(self.sync, message)

    def close(self) -> None:
        """Stop mirroring store updates to disk. The working copy is left in place."""
        if not self._closed:
            self.binder.close()
            self._closed = True

    def __enter__(self) -> "Database":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False
