"""gittree: a nested value stored as a directory of YAML files in a git working copy."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("gittree")
except PackageNotFoundError:
    __version__ = "0.0.0-dev"  # Fallback for source checkouts without metadata

from .fs import DELETED, LazyTree, read, write, ls, materialized, to_plain  # noqa: F401
from .fs import TreeError, ReadError, DecodeError, WriteIOError  # noqa: F401
from .store import ReactiveStore, StoreBinder, ValueStore  # noqa: F401
from .lock import AdvisoryLock  # noqa: F401

__all__ = [
    "DELETED",
    "LazyTree",
    "read",
    "write",
    "ls",
    "materialized",
    "to_plain",
    "TreeError",
    "ReadError",
    "DecodeError",
    "WriteIOError",
    "ReactiveStore",
    "StoreBinder",
    "ValueStore",
    "AdvisoryLock",
    "__version__",
]
