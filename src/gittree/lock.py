from __future__ import annotations

import getpass
import os
import socket
import time
from datetime import datetime, timezone
from pathlib import Path


class AdvisoryLock:
    """File-based advisory lock guarding one working copy.

    Only one commit/push runs against a working copy at a time. The lock file
    is created exclusively and records who holds it; a lock older than the
    TTL is considered stale and broken.

    Environment variables (optional):
    - GITTREE_LOCK_TTL: seconds to consider a lock stale
    - GITTREE_LOCK_POLL: polling interval in seconds while waiting
    """

    def __init__(
        self,
        path: Path,
        *,
        ttl: int | None = None,
        timeout: float | None = None,
        force_break: bool = False,
        operation: str = "sync",
    ):
        self.path = Path(path)
        self.ttl = ttl if ttl is not None else int(os.getenv("GITTREE_LOCK_TTL", "60"))
        self.poll = float(os.getenv("GITTREE_LOCK_POLL", "0.1"))
        self.timeout = timeout
        self.force_break = force_break
        self.operation = operation
        self.acquired = False

    def _is_stale(self) -> bool:
        try:
            mtime = self.path.stat().st_mtime
        except FileNotFoundError:
            return False
        return (time.time() - mtime) > self.ttl

    def _write_holder(self) -> None:
        try:
            user = getpass.getuser()
        except (KeyError, OSError):
            user = "unknown"
        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        self.path.write_text(
            f"pid={os.getpid()} time={timestamp} user={user} "
            f"host={socket.gethostname()} op={self.operation}\n",
            encoding="utf-8",
        )

    def holder(self) -> dict | None:
        """Metadata of the current holder (pid, time, user, host, op), or None."""
        try:
            content = self.path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        info: dict = {}
        for part in content.split():
            if "=" in part:
                key, value = part.split("=", 1)
                info[key] = value
        if "pid" in info and info["pid"].isdigit():
            info["pid"] = int(info["pid"])
        return info or None

    def _break(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass

    def acquire(self) -> bool:
        start = time.time()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        while True:
            try:
                fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
                os.close(fd)
                self._write_holder()
                self.acquired = True
                return True
            except FileExistsError:
                if self.force_break:
                    self._break()
                    continue
                if self.timeout == 0:
                    return False
                # ttl<=0 means never stale
                if self.ttl > 0 and self._is_stale():
                    self._break()
                    continue
                if self.timeout is not None and (time.time() - start) >= self.timeout:
                    return False
                time.sleep(self.poll)

    def release(self) -> None:
        if self.acquired:
            self._break()
            self.acquired = False

    def __enter__(self):
        if not self.acquire():
            holder = self.holder() or {}
            raise TimeoutError(
                f"Failed to acquire {self.path} within {self.timeout}s "
                f"(held by pid={holder.get('pid', '?')} op={holder.get('op', '?')})"
            )
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False
