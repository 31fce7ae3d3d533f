"""Git synchronization for gittree working copies.

``Repository`` is a thin handle over a GitPython working copy exposing the
primitives the store needs: status, index, commit, merge, branch, push and
fetch. ``SyncEngine`` builds on it:

- commit() stages every change in the working copy and commits on HEAD
- push() publishes HEAD to the target branch, fast-forwarding when the
  remote tip is an ancestor and creating a two-parent merge commit otherwise
- Conflicting merges raise GitConflict before anything is committed
- Publishing goes through a disposable local branch; a rejected push
  refreshes the remote-tracking refs and raises PushRejected (no retry loop,
  the caller re-runs push against the refreshed remote state)
"""

from __future__ import annotations

import getpass
import os
import re
import secrets
import socket
import sys
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from git import Actor, Repo, GitCommandError, InvalidGitRepositoryError, NoSuchPathError
from git.objects import Commit
from git.remote import PushInfo

from .observability import log_debug, log_error, log_warning, timeit


_CONFLICT_LINE = re.compile(r"^(\d+) ([0-9a-f]+) ([123])\t(.*)$", re.DOTALL)

_PUSH_FAILURE_FLAGS = (
    PushInfo.ERROR | PushInfo.REJECTED | PushInfo.REMOTE_REJECTED | PushInfo.REMOTE_FAILURE
)

# git add is called in batches to stay below the command line length limit
_STAGE_BATCH = 500


class GitSyncError(Exception):
    """Base exception for git sync operations."""
    pass


class RepositoryError(GitSyncError):
    """Failed to open, clone or pull the working copy."""
    pass


class PushRejected(GitSyncError):
    """The remote refused the push (stale ref, auth or network failure).

    Remote-tracking refs were refreshed before this was raised, so calling
    push again re-evaluates against the current remote tip.
    """

    def __init__(self, message: str, *, branch: str, commit: str):
        self.branch = branch
        self.commit = commit
        super().__init__(message)


@dataclass(frozen=True)
class Identity:
    """Author/committer written into every commit."""

    name: str
    email: str

    @classmethod
    def from_host(cls) -> "Identity":
        """Identity of this process: ``PID<pid> on <hostname>`` / ``<user>@<hostname>``."""
        hostname = socket.gethostname()
        try:
            user = getpass.getuser()
        except (KeyError, OSError):
            user = "unknown"
        return cls(name=f"PID{os.getpid()} on {hostname}", email=f"{user}@{hostname}")

    def actor(self) -> Actor:
        return Actor(self.name, self.email)


@dataclass(frozen=True)
class RemoteDescriptor:
    """Where the tree is published and how to authenticate."""

    url: str
    branch: str = "main"
    name: str = "origin"
    ssh_key_path: Optional[Path] = None
    token: Optional[str] = None

    def git_env(self) -> Dict[str, str]:
        """Environment for git subprocesses talking to this remote."""
        env: Dict[str, str] = {}
        # Fail fast instead of hanging on credential prompts.
        for key, default in (
            ("GIT_TERMINAL_PROMPT", "0"),
            ("GCM_INTERACTIVE", "never"),
            ("GIT_HTTP_LOW_SPEED_LIMIT", "1"),
            ("GIT_HTTP_LOW_SPEED_TIME", "30"),
        ):
            env[key] = os.environ.get(key, default)

        if self.token and self.url.startswith("https://"):
            # Git calls askpass with "Username for ..." and "Password for ..."
            env["GITTREE_ASKPASS_TOKEN"] = self.token
            env["GIT_ASKPASS"] = (
                f'{sys.executable} -c "import os, sys; '
                f'print(\\"x-access-token\\" if \\"Username\\" in sys.argv[1] '
                f'else os.environ[\\"GITTREE_ASKPASS_TOKEN\\"])"'
            )

        if self.ssh_key_path:
            env["GIT_SSH_COMMAND"] = (
                f"ssh -i {self.ssh_key_path} -o IdentitiesOnly=yes -o BatchMode=yes"
            )
        elif self.url.startswith("git@") or self.url.startswith("ssh://"):
            env["GIT_SSH_COMMAND"] = os.environ.get("GIT_SSH_COMMAND", "ssh -o BatchMode=yes")
        return env


@dataclass(frozen=True)
class CommitRecord:
    """A commit created or resolved by gittree. Never mutated."""

    sha: str
    parents: Tuple[str, ...] = ()
    message: str = ""

    @classmethod
    def from_commit(cls, commit: Commit) -> "CommitRecord":
        message = commit.message
        if isinstance(message, bytes):
            message = message.decode("utf-8", "replace")
        return cls(
            sha=commit.hexsha,
            parents=tuple(p.hexsha for p in commit.parents),
            message=message,
        )

    def to_json(self) -> Dict[str, Any]:
        return {"sha": self.sha, "parents": list(self.parents), "message": self.message}


@dataclass(frozen=True)
class Conflict:
    """One conflicted path; base/ours/theirs are blob ids of the merge stages."""

    path: str
    base: Optional[str] = None
    ours: Optional[str] = None
    theirs: Optional[str] = None

    def to_json(self) -> Dict[str, Any]:
        return {"path": self.path, "base": self.base, "ours": self.ours, "theirs": self.theirs}


@dataclass(frozen=True)
class MergeResult:
    """Outcome of merging two commits into a tree without touching any ref."""

    tree: str
    clean: bool = True
    conflicts: Tuple[Conflict, ...] = ()

    @property
    def has_conflicts(self) -> bool:
        return not self.clean

    @property
    def conflicted_paths(self) -> List[str]:
        return [c.path for c in self.conflicts]


@dataclass(frozen=True)
class PushResult:
    commit: CommitRecord
    branch: str
    publish_branch: str
    merged: bool = False
    fast_forwarded: bool = False  # local branch moved to the published commit


class GitConflict(GitSyncError):
    """Merging local and remote heads produced conflicts; nothing was committed."""

    def __init__(self, merge: MergeResult, *, local: str, remote: str, branch: str):
        self.merge = merge
        self.local = local
        self.remote = remote
        self.branch = branch
        paths = ", ".join(merge.conflicted_paths) or "unknown paths"
        super().__init__(
            f"Merging {local[:12]} with {remote[:12]} into {branch} conflicts on: {paths}"
        )

    @property
    def conflicts(self) -> Tuple[Conflict, ...]:
        return self.merge.conflicts


class Repository:
    """Handle over one local working copy and its remote.

    Thread Safety:
        Not thread-safe. Only one write/commit/push may run against a working
        copy at a time; Database serializes them.
    """

    def __init__(self, repo: Repo, remote: RemoteDescriptor):
        self._repo = repo
        self.remote = remote
        self._env = remote.git_env()

    # ------------------------------------------------------------------
    # Opening
    # ------------------------------------------------------------------

    @classmethod
    def open(cls, remote: RemoteDescriptor, local_path: Path) -> "Repository":
        """Clone ``remote`` into ``local_path`` (or reuse a clone there) and pull.

        Raises:
            RepositoryError: If clone, fetch or checkout fails; no handle is returned
        """
        local_path = Path(local_path)
        try:
            repo = cls._clone_or_reuse(remote, local_path)
            handle = cls(repo, remote)
            handle.pull()
        except RepositoryError:
            raise
        except (GitCommandError, InvalidGitRepositoryError, NoSuchPathError, OSError) as e:
            raise RepositoryError(f"Failed to open {remote.url} at {local_path}: {e}") from e
        return handle

    @staticmethod
    def _clone_or_reuse(remote: RemoteDescriptor, local_path: Path) -> Repo:
        if (local_path / ".git").exists():
            repo = Repo(local_path)
            if remote.name in [r.name for r in repo.remotes]:
                origin = repo.remote(remote.name)
                if origin.url != remote.url:
                    log_warning("Re-pointing remote", remote=remote.name, old=origin.url, new=remote.url)
                    origin.set_url(remote.url)
            else:
                repo.create_remote(remote.name, remote.url)
            return repo

        if local_path.exists() and any(local_path.iterdir()):
            raise RepositoryError(f"{local_path} exists and is not a git working copy")
        local_path.parent.mkdir(parents=True, exist_ok=True)

        with timeit("git.clone", url=remote.url, path=str(local_path)):
            return Repo.clone_from(
                remote.url,
                local_path,
                env={**os.environ, **remote.git_env()},
                origin=remote.name,
            )

    def pull(self) -> Optional[str]:
        """Fetch and bring the target branch up to date; returns the local head.

        A local branch that diverged from the remote is left as is: push()
        merges it.
        """
        branch = self.remote.branch
        remote_ref = f"{self.remote.name}/{branch}"
        self.fetch_all()
        remote_head = self.head_commit(branch, remote=self.remote.name)
        local_head = self.head_commit(branch)

        if local_head is not None:
            if self.current_branch() != branch:
                with self._git_op(f"checkout {branch}") as git:
                    git.checkout(branch)
            if remote_head is not None and remote_head != local_head:
                base = self.merge_base(local_head, remote_head)
                if base == local_head:
                    self.fast_forward(remote_head)
                    local_head = remote_head
                elif base != remote_head:
                    log_warning(
                        "Local branch diverged from remote; push will merge",
                        branch=branch,
                        local=local_head,
                        remote=remote_head,
                    )
        elif remote_head is not None:
            with self._git_op(f"checkout -b {branch} --track {remote_ref}") as git:
                git.checkout("-b", branch, "--track", remote_ref)
            local_head = remote_head
        elif self.head_commit() is not None:
            # Remote has no such branch yet: start it from what is checked out.
            with self._git_op(f"checkout -b {branch}") as git:
                git.checkout("-b", branch)
        else:
            # Empty repository: the first commit creates the branch.
            with self._git_op(f"symbolic-ref HEAD {branch}") as git:
                git.symbolic_ref("HEAD", f"refs/heads/{branch}")
        return local_head

    # ------------------------------------------------------------------
    # GitPython helpers
    # ------------------------------------------------------------------

    @contextmanager
    def _git_op(self, label: str) -> Iterator[Any]:
        """Yield ``repo.git`` with the remote's environment applied."""
        log_debug(f"GIT_OP_START: {label}")
        with self._repo.git.custom_environment(**self._env):
            yield self._repo.git
        log_debug(f"GIT_OP_END: {label}")

    @property
    def workdir(self) -> Path:
        return Path(self._repo.working_tree_dir)

    @property
    def git_dir(self) -> Path:
        return Path(self._repo.git_dir)

    @property
    def repo(self) -> Repo:
        return self._repo

    def current_branch(self) -> Optional[str]:
        try:
            return self._repo.head.reference.name
        except TypeError:
            # detached HEAD
            return None

    # ------------------------------------------------------------------
    # Working copy and index
    # ------------------------------------------------------------------

    def status(self) -> List[str]:
        """Paths that differ between HEAD, index and working tree (untracked included)."""
        with self._git_op("status") as git:
            out = git.status("--porcelain=v1", "-z", "--untracked-files=all")
        fields = out.split("\0")
        paths: List[str] = []
        i = 0
        while i < len(fields):
            entry = fields[i]
            i += 1
            if len(entry) < 4:
                continue
            code, path = entry[:2], entry[3:]
            paths.append(path)
            if code[0] in "RC" and i < len(fields):
                # rename/copy: the next field is the source path
                paths.append(fields[i])
                i += 1
        return paths

    def refresh_index(self) -> None:
        with self._git_op("update-index --refresh") as git:
            git.update_index("-q", "--refresh", with_exceptions=False)

    def stage(self, paths: Sequence[str]) -> None:
        for start in range(0, len(paths), _STAGE_BATCH):
            batch = paths[start:start + _STAGE_BATCH]
            with self._git_op(f"add --all ({len(batch)} paths)") as git:
                git.add("--all", "--", *batch)

    def write_tree(self) -> str:
        with self._git_op("write-tree") as git:
            return git.write_tree().strip()

    # ------------------------------------------------------------------
    # Commits and refs
    # ------------------------------------------------------------------

    def head_commit(self, branch: Optional[str] = None, remote: Optional[str] = None) -> Optional[str]:
        """Commit id of HEAD, a local branch or a remote-tracking branch; None if absent."""
        if branch is None:
            ref = "HEAD"
        elif remote:
            ref = f"refs/remotes/{remote}/{branch}"
        else:
            ref = f"refs/heads/{branch}"
        with self._git_op(f"rev-parse {ref}") as git:
            out = git.rev_parse("--verify", "--quiet", f"{ref}^{{commit}}", with_exceptions=False)
        return out.strip() or None

    def read_commit(self, sha: str) -> CommitRecord:
        return CommitRecord.from_commit(self._repo.commit(sha))

    def create_commit(
        self,
        ref: Optional[str],
        author: Identity,
        committer: Identity,
        message: str,
        tree: str,
        parents: Iterable[str],
    ) -> CommitRecord:
        """Create a commit object; when ``ref`` is given, point it at the commit."""
        commit = Commit.create_from_tree(
            self._repo,
            self._repo.tree(tree),
            message,
            parent_commits=[self._repo.commit(p) for p in parents],
            head=False,
            author=author.actor(),
            committer=committer.actor(),
        )
        if ref:
            summary = message.splitlines()[0] if message else ""
            with self._git_op(f"update-ref {ref}") as git:
                git.update_ref("-m", f"commit: {summary}", ref, commit.hexsha)
        return CommitRecord.from_commit(commit)

    def merge_base(self, a: str, b: str) -> Optional[str]:
        with self._git_op("merge-base") as git:
            out = git.merge_base(a, b, with_exceptions=False)
        return out.strip() or None

    def merge(self, a: str, b: str) -> MergeResult:
        """Three-way merge of two commits into a new tree; no ref or index changes."""
        with self._git_op("merge-tree --write-tree") as git:
            status, out, err = git.merge_tree(
                "--write-tree", "-z", "--no-messages", a, b,
                with_extended_output=True,
                with_exceptions=False,
            )
        if status not in (0, 1):
            raise GitSyncError(f"merge-tree failed for {a} and {b}: {err.strip()}")

        fields = out.split("\0")
        tree = fields[0].strip()
        stages: Dict[str, Dict[int, str]] = {}
        for entry in fields[1:]:
            match = _CONFLICT_LINE.match(entry)
            if not match:
                break
            _mode, sha, stage, path = match.groups()
            stages.setdefault(path, {})[int(stage)] = sha

        conflicts = tuple(
            Conflict(path=path, base=s.get(1), ours=s.get(2), theirs=s.get(3))
            for path, s in stages.items()
        )
        return MergeResult(tree=tree, clean=status == 0, conflicts=conflicts)

    def fast_forward(self, commit: str) -> None:
        """Move the checked-out branch and working tree forward to ``commit``."""
        with self._git_op(f"merge --ff-only {commit}") as git:
            git.merge("--ff-only", commit)

    def create_branch(self, name: str, commit: str, force: bool = False) -> None:
        args = ["--force"] if force else []
        with self._git_op(f"branch {name}") as git:
            git.branch(*args, name, commit)

    def delete_branch(self, name: str) -> None:
        with self._git_op(f"branch -D {name}") as git:
            git.branch("-D", name)

    def branches(self) -> List[str]:
        return [head.name for head in self._repo.heads]

    # ------------------------------------------------------------------
    # Remote
    # ------------------------------------------------------------------

    def push(self, refspecs: Sequence[str]) -> None:
        """Push refspecs to the remote.

        Raises:
            GitCommandError: If git fails or the remote rejects any ref
        """
        origin = self._repo.remote(self.remote.name)
        with self._repo.git.custom_environment(**self._env):
            infos = origin.push(refspec=list(refspecs))
        infos.raise_if_error()
        failed = [info for info in infos if info.flags & _PUSH_FAILURE_FLAGS]
        if failed:
            details = "; ".join(
                f"{info.remote_ref_string}: {info.summary.strip()}" for info in failed
            )
            raise GitCommandError(["git", "push", self.remote.name, *refspecs], 1, stderr=details)

    def fetch_all(self) -> None:
        """Update every remote-tracking ref of the remote."""
        with timeit("git.fetch", remote=self.remote.name):
            with self._git_op(f"fetch --prune {self.remote.name}") as git:
                git.fetch("--prune", self.remote.name)


class SyncEngine:
    """Turns working copy changes into commits and publishes them.

    Attributes:
        repository: Working copy handle
        identity: Author and committer of created commits
        branch: Remote branch that push() publishes to
    """

    def __init__(
        self,
        repository: Repository,
        identity: Identity,
        *,
        branch: Optional[str] = None,
        publish_prefix: str = "gittree-publish",
        cleanup_publish_branch: bool = True,
    ):
        self.repository = repository
        self.identity = identity
        self.branch = branch or repository.remote.branch
        self.publish_prefix = publish_prefix
        self.cleanup_publish_branch = cleanup_publish_branch

    def commit(self, message: str = "Wrote to the database") -> CommitRecord:
        """Stage every change in the working copy and commit it on HEAD.

        The commit is created even when nothing changed; its parent is the
        current HEAD, or none for the first commit of the branch.
        """
        repo = self.repository
        with timeit("sync.commit", branch=self.branch) as info:
            repo.refresh_index()
            changed = repo.status()
            if changed:
                repo.stage(changed)
            tree = repo.write_tree()
            head = repo.head_commit()
            record = repo.create_commit(
                "HEAD",
                self.identity,
                self.identity,
                message,
                tree,
                [head] if head else [],
            )
            info.update(commit=record.to_json(), changed=len(changed))
        return record

    def push(self) -> PushResult:
        """Publish local HEAD to the remote target branch.

        Raises:
            GitConflict: Local and remote heads conflict; nothing committed or pushed
            PushRejected: The remote refused the push; remote refs were refreshed
            GitSyncError: HEAD has no commit to publish
        """
        repo = self.repository
        local = repo.head_commit()
        if local is None:
            raise GitSyncError("Nothing to push: the current branch has no commits")
        remote_head = repo.head_commit(self.branch, remote=repo.remote.name)

        merged = False
        if remote_head is None or remote_head == local:
            target = local
        else:
            base = repo.merge_base(local, remote_head)
            if base == remote_head:
                target = local
            elif base == local:
                # Local is behind: the remote tip already contains everything.
                target = remote_head
            else:
                target = self._merge(local, remote_head)
                merged = True

        publish_branch = self._publish(target)
        fast_forwarded = self._advance_local(local, target)
        return PushResult(
            commit=repo.read_commit(target),
            branch=self.branch,
            publish_branch=publish_branch,
            merged=merged,
            fast_forwarded=fast_forwarded,
        )

    def _merge(self, local: str, remote_head: str) -> str:
        repo = self.repository
        with timeit("sync.merge", local=local, remote=remote_head):
            result = repo.merge(local, remote_head)
        if result.has_conflicts:
            log_error(
                "Merge conflict; nothing committed",
                branch=self.branch,
                conflicts=[c.to_json() for c in result.conflicts],
            )
            raise GitConflict(result, local=local, remote=remote_head, branch=self.branch)
        record = repo.create_commit(
            None,
            self.identity,
            self.identity,
            f"Clean merge into {self.branch}",
            result.tree,
            [local, remote_head],
        )
        return record.sha

    def _publish(self, commit: str) -> str:
        repo = self.repository
        name = f"{self.publish_prefix}-{secrets.token_hex(6)}"
        repo.create_branch(name, commit, force=True)
        try:
            try:
                with timeit("sync.push", branch=self.branch, commit=commit):
                    repo.push([f"refs/heads/{name}:refs/heads/{self.branch}"])
            except GitCommandError as e:
                log_error("Push rejected; refreshing remote refs", branch=self.branch, error=str(e))
                try:
                    repo.fetch_all()
                except GitCommandError as fetch_error:
                    log_warning("Fetch after rejected push failed", error=str(fetch_error))
                raise PushRejected(
                    f"Push of {commit[:12]} to {self.branch} was rejected: {e}",
                    branch=self.branch,
                    commit=commit,
                ) from e
        finally:
            if self.cleanup_publish_branch:
                self._drop_branch(name)
        return name

    def _drop_branch(self, name: str) -> None:
        try:
            self.repository.delete_branch(name)
        except GitCommandError as e:
            log_warning("Could not delete publish branch", branch=name, error=str(e))

    def _advance_local(self, local: str, target: str) -> bool:
        if target == local:
            return False
        repo = self.repository
        if repo.current_branch() != self.branch:
            log_warning(
                "Published commit not applied locally: target branch is not checked out",
                branch=self.branch,
                current=repo.current_branch(),
            )
            return False
        try:
            repo.fast_forward(target)
        except GitCommandError as e:
            log_warning("Could not fast-forward local branch", commit=target, error=str(e))
            return False
        return True
