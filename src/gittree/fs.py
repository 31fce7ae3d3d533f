"""Tree codec: mirror a nested value onto a directory of YAML files.

A mapping (or sequence) becomes a directory, every scalar becomes a file
holding its YAML serialization. Sequences are stored as directories whose
entries are named ``0``, ``1``, ...; a directory is read back as a sequence
when it contains an entry named ``0``.

``read`` is lazy: entries are listed once and each one is loaded on first
access, then memoized for the lifetime of the returned tree. ``write``
reconciles a value onto a directory, touching only the entries that differ.
"""

from __future__ import annotations

import os
import shutil
import stat
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

import yaml


IGNORED_NAMES = frozenset({".git"})


class _Deleted:
    """Deletion marker: a key mapped to DELETED is removed from disk on write."""

    _instance: Optional["_Deleted"] = None

    def __new__(cls) -> "_Deleted":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "DELETED"

    def __bool__(self) -> bool:
        return False

    def __reduce__(self):
        return (_Deleted, ())


DELETED = _Deleted()


class TreeError(Exception):
    """Base exception for tree codec operations."""
    pass


class ReadError(TreeError):
    """Directory or entry missing or unreadable."""
    pass


class DecodeError(TreeError):
    """A scalar file does not hold valid YAML."""

    def __init__(self, path: Path, reason: object):
        self.path = Path(path)
        super().__init__(f"Failed to decode {self.path}: {reason}")


class WriteIOError(TreeError):
    """Filesystem failure while reconciling a tree; re-running write is safe."""
    pass


def _is_index(name: str) -> bool:
    return name.isascii() and name.isdigit()


def _is_composite(value: Any) -> bool:
    if isinstance(value, (str, bytes)):
        return False
    return isinstance(value, (LazyTree, Mapping, list, tuple))


def dump_scalar(value: Any) -> bytes:
    """Serialize a scalar the way it is stored on disk."""
    try:
        text = yaml.safe_dump(value, default_flow_style=False, allow_unicode=True, sort_keys=True)
    except yaml.YAMLError as e:
        raise TypeError(f"Cannot serialize {type(value).__name__} value: {e}") from e
    return text.encode("utf-8")


def load_scalar(path: Path) -> Any:
    """Load one scalar file."""
    try:
        data = path.read_bytes()
    except OSError as e:
        raise ReadError(f"Cannot read {path}: {e}") from e
    try:
        return yaml.safe_load(data.decode("utf-8"))
    except UnicodeDecodeError as e:
        raise DecodeError(path, e) from e
    except yaml.YAMLError as e:
        raise DecodeError(path, e) from e


class LazyTree:
    """Directory-backed mapping whose entries load on first access.

    Entry names are not exposed through iteration; use ``ls()``. Iterating a
    tree is only allowed when it is a sequence (it has an entry named ``0``)
    and yields the values of the numeric entries in ascending numeric order.

    Derived trees (``set``/``discard``) share the listing but carry their
    own overrides and start with an empty cache.
    """

    __slots__ = ("_directory", "_names", "_cache", "_overrides")

    def __init__(
        self,
        directory: Path,
        names: List[str],
        cache: Optional[Dict[Path, Any]] = None,
        overrides: Optional[Dict[str, Any]] = None,
    ):
        self._directory = Path(directory)
        self._names = tuple(names)
        self._cache: Dict[Path, Any] = {} if cache is None else cache
        self._overrides: Dict[str, Any] = dict(overrides or {})

    @property
    def directory(self) -> Path:
        return self._directory

    @property
    def is_sequence(self) -> bool:
        return "0" in self

    def names(self) -> List[str]:
        """Entry names, including overrides and excluding deletions."""
        overrides = self._overrides
        names = [n for n in self._names if overrides.get(n, n) is not DELETED]
        names.extend(k for k, v in overrides.items() if k not in self._names and v is not DELETED)
        return names

    def materialized(self) -> Dict[str, Any]:
        """Entries that were read or overridden, deletion markers included."""
        items: Dict[str, Any] = {}
        for name in self._names:
            path = self._directory / name
            if path in self._cache:
                items[name] = self._cache[path]
        items.update(self._overrides)
        return items

    def __getitem__(self, name: Any) -> Any:
        name = str(name)
        if name in self._overrides:
            value = self._overrides[name]
            if value is DELETED:
                raise KeyError(name)
            return value
        if name not in self._names:
            raise KeyError(name)
        path = self._directory / name
        try:
            return self._cache[path]
        except KeyError:
            pass
        value = _load_entry(path, self._cache)
        self._cache[path] = value
        return value

    def get(self, name: Any, default: Any = None) -> Any:
        try:
            return self[name]
        except KeyError:
            return default

    def __contains__(self, name: object) -> bool:
        name = str(name)
        if name in self._overrides:
            return self._overrides[name] is not DELETED
        return name in self._names

    def __len__(self) -> int:
        return len(self.names())

    def __iter__(self) -> Iterator[Any]:
        if not self.is_sequence:
            raise TypeError(f"{self._directory} is not a sequence; use ls() to list its entries")
        indices = sorted((n for n in self.names() if _is_index(n)), key=int)
        for name in indices:
            yield self[name]

    def set(self, name: Any, value: Any) -> "LazyTree":
        """Return a new tree with ``name`` bound to ``value``."""
        overrides = dict(self._overrides)
        overrides[str(name)] = value
        return LazyTree(self._directory, list(self._names), None, overrides)

    def discard(self, name: Any) -> "LazyTree":
        """Return a new tree with ``name`` marked for deletion."""
        name = str(name)
        if name not in self:
            raise KeyError(name)
        return self.set(name, DELETED)

    def __repr__(self) -> str:
        kind = "sequence" if self.is_sequence else "mapping"
        return f"<LazyTree {kind} {self._directory} names={self.names()!r}>"


def _list_directory(directory: Path) -> List[str]:
    try:
        names = os.listdir(directory)
    except FileNotFoundError as e:
        raise ReadError(f"Directory does not exist: {directory}") from e
    except OSError as e:
        raise ReadError(f"Cannot read directory {directory}: {e}") from e
    return sorted(n for n in names if n not in IGNORED_NAMES)


def _load_entry(path: Path, cache: Dict[Path, Any]) -> Any:
    try:
        st = path.stat()
    except OSError as e:
        raise ReadError(f"Cannot stat {path}: {e}") from e
    if stat.S_ISDIR(st.st_mode):
        return LazyTree(path, _list_directory(path), cache)
    if stat.S_ISREG(st.st_mode):
        return load_scalar(path)
    return None


def read(directory: Path | str) -> LazyTree:
    """Read a directory into a lazily materialized tree.

    Raises:
        ReadError: If the directory is missing or unreadable
    """
    directory = Path(directory)
    return LazyTree(directory, _list_directory(directory), {})


def ls(value: Any) -> List[str]:
    """List entry names without forcing unread entries."""
    if isinstance(value, LazyTree):
        return value.names()
    if isinstance(value, Mapping):
        return [str(k) for k, v in value.items() if v is not DELETED]
    if isinstance(value, (list, tuple)):
        return [str(i) for i in range(len(value))]
    raise TypeError(f"Cannot list entries of a {type(value).__name__}")


def materialized(value: Any) -> Dict[str, Any]:
    if isinstance(value, LazyTree):
        return value.materialized()
    return dict(_items(value))


def to_plain(value: Any) -> Any:
    """Fully materialize a tree into dicts, lists and scalars."""
    if isinstance(value, LazyTree):
        if value.is_sequence:
            return [to_plain(item) for item in value]
        return {name: to_plain(value[name]) for name in value.names()}
    if isinstance(value, Mapping):
        return {str(k): to_plain(v) for k, v in value.items() if v is not DELETED}
    if isinstance(value, (list, tuple)):
        return [to_plain(item) for item in value]
    return value


def _items(value: Any) -> List[Tuple[str, Any]]:
    if isinstance(value, Mapping):
        return [(str(k), v) for k, v in value.items()]
    return [(str(i), v) for i, v in enumerate(value)]


def _same_directory(a: Path, b: Path) -> bool:
    return a == b or a.resolve() == b.resolve()


def _present_items(value: Any, directory: Path) -> List[Tuple[str, Any]]:
    if isinstance(value, LazyTree):
        if _same_directory(value.directory, directory):
            return list(value.materialized().items())
        # Moved subtree: nothing under the target is known, write everything.
        loaded = value.materialized()
        unread = [name for name in value.names() if name not in loaded]
        if unread and not value.directory.is_dir():
            raise ReadError(
                f"Cannot copy {value.directory} to {directory}: the source directory is gone "
                f"and {len(unread)} entries were never read"
            )
        return [(name, value[name]) for name in value.names()]
    return _items(value)


def _check_name(name: str) -> None:
    if not name or name in (".", "..") or "/" in name or os.sep in name:
        raise ValueError(f"Invalid entry name: {name!r}")
    if name in IGNORED_NAMES:
        raise ValueError(f"Reserved entry name: {name!r}")


def _remove(path: Path) -> None:
    try:
        st = path.lstat()
    except FileNotFoundError:
        return
    if stat.S_ISDIR(st.st_mode):
        shutil.rmtree(path)
    else:
        path.unlink()


def _write_scalar(value: Any, path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    data = dump_scalar(value)
    try:
        existing = path.read_bytes()
    except FileNotFoundError:
        existing = None
    if existing is not None and _same_content(existing, data, value):
        return
    path.write_bytes(data)


def _same_content(existing: bytes, data: bytes, value: Any) -> bool:
    if existing == data:
        return True
    # Hand-written files may hold the same value in a different layout.
    try:
        current = yaml.safe_load(existing.decode("utf-8"))
    except (UnicodeDecodeError, yaml.YAMLError):
        return False
    return type(current) is type(value) and current == value


def _ensure_directory(path: Path) -> None:
    if path.is_symlink() or (path.exists() and not path.is_dir()):
        path.unlink()
    path.mkdir(exist_ok=True)


def _apply(value: Any, directory: Path) -> None:
    for name, item in _present_items(value, directory):
        _check_name(name)
        target = directory / name
        if item is DELETED:
            _remove(target)
        elif _is_composite(item):
            _ensure_directory(target)
            _apply(item, target)
        else:
            _write_scalar(item, target)

    keep = set(ls(value))
    for name in os.listdir(directory):
        if name in IGNORED_NAMES or name in keep:
            continue
        _remove(directory / name)


def write(value: Any, directory: Path | str) -> None:
    """Reconcile ``value`` onto ``directory``.

    Present keys are written (files only when their bytes change), keys mapped
    to DELETED and on-disk entries that are not keys of ``value`` are removed.
    For a LazyTree only materialized entries are written; entries it never
    loaded stay untouched on disk.

    Raises:
        TypeError: If ``value`` is not a mapping or sequence
        ValueError: If a key is not a valid entry name
        WriteIOError: On filesystem failure (directory may be partially written)
    """
    directory = Path(directory)
    if not _is_composite(value):
        raise TypeError(f"Only mappings and sequences can be written to a directory, got {type(value).__name__}")
    try:
        directory.mkdir(parents=True, exist_ok=True)
        _apply(value, directory)
    except OSError as e:
        raise WriteIOError(f"Failed to write tree to {directory}: {e}") from e
