"""Reactive value store and the binder that mirrors it onto a directory.

``ValueStore`` holds an immutable root value and replaces it on every
mutation (copy-on-write along the mutated path), then notifies subscribers
with the new root. ``StoreBinder`` is the single subscriber that writes each
new root to the working copy and tracks whether it differs from the last
synchronized snapshot.
"""

from __future__ import annotations

import threading
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Callable, List, Optional, Protocol, Tuple, Union, runtime_checkable

from .fs import DELETED, LazyTree, write


Key = Union[str, int]
KeyPath = Union[Key, Tuple[Key, ...]]
Callback = Callable[[Any], None]


@runtime_checkable
class ReactiveStore(Protocol):
    """Anything that holds a tree value and reports its replacements."""

    @property
    def value(self) -> Any:
        ...

    def subscribe(self, callback: Callback) -> Callable[[], None]:
        """Register ``callback``; it receives every new root value. Returns an unsubscribe function."""
        ...


def _normalize(path: KeyPath) -> Tuple[Key, ...]:
    if isinstance(path, (str, int)):
        return (path,)
    return tuple(path)


def _child(node: Any, key: Key) -> Any:
    if isinstance(node, LazyTree):
        return node[key]
    if isinstance(node, (list, tuple)):
        return node[int(key)]
    if isinstance(node, Mapping):
        value = node[str(key)]
        if value is DELETED:
            raise KeyError(key)
        return value
    raise TypeError(f"Cannot look up {key!r} in scalar value {node!r}")


def _assoc(node: Any, key: Key, value: Any) -> Any:
    if isinstance(node, LazyTree):
        return node.set(key, value)
    if isinstance(node, (list, tuple)):
        index = int(key)
        items = list(node)
        if index == len(items):
            items.append(value)
        elif 0 <= index < len(items):
            items[index] = value
        else:
            raise IndexError(f"Sequence index {index} out of range")
        return items
    if isinstance(node, Mapping):
        copy = dict(node)
        copy[str(key)] = value
        return copy
    raise TypeError(f"Cannot set {key!r} on scalar value {node!r}")


def _dissoc(node: Any, key: Key) -> Any:
    if isinstance(node, LazyTree):
        if node.is_sequence and str(key).isdigit():
            # Removing an element shifts the ones after it.
            node = list(node)
        else:
            return node.discard(key)
    if isinstance(node, (list, tuple)):
        items = list(node)
        items.pop(int(key))
        return items
    if isinstance(node, Mapping):
        if str(key) not in node:
            raise KeyError(key)
        return {k: v for k, v in node.items() if k != str(key)}
    raise TypeError(f"Cannot delete {key!r} from scalar value {node!r}")


def _assoc_in(node: Any, keys: Tuple[Key, ...], value: Any) -> Any:
    key, rest = keys[0], keys[1:]
    if rest:
        try:
            child = _child(node, key)
        except (KeyError, IndexError):
            child = {}
        value = _assoc_in(child, rest, value)
    return _assoc(node, key, value)


def _dissoc_in(node: Any, keys: Tuple[Key, ...]) -> Any:
    key, rest = keys[0], keys[1:]
    if not rest:
        return _dissoc(node, key)
    return _assoc(node, key, _dissoc_in(_child(node, key), rest))


class ValueStore:
    """Copy-on-write store over a tree value.

    Mutations never modify the current value in place: each one builds a new
    root and calls every subscriber with it, synchronously, before returning.
    If a subscriber raises, the previous root is restored and the error
    propagates.

    Pass ``lock`` to share one lock with the subscribers; a binder that
    writes under its own lock must use the same one.
    """

    def __init__(self, value: Any = None, *, lock: Optional[threading.RLock] = None):
        self._value = {} if value is None else value
        self._subscribers: List[Callback] = []
        self._lock = lock or threading.RLock()

    @property
    def value(self) -> Any:
        return self._value

    def subscribe(self, callback: Callback) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def get(self, path: KeyPath = (), default: Any = None) -> Any:
        node = self._value
        for key in _normalize(path):
            try:
                node = _child(node, key)
            except (KeyError, IndexError, TypeError, ValueError):
                return default
        return node

    def set(self, path: KeyPath, value: Any) -> Any:
        keys = _normalize(path)
        if not keys:
            return self.replace(value)
        with self._lock:
            return self._publish(_assoc_in(self._value, keys, value))

    def delete(self, path: KeyPath) -> Any:
        keys = _normalize(path)
        if not keys:
            raise ValueError("Cannot delete the root value")
        with self._lock:
            return self._publish(_dissoc_in(self._value, keys))

    def update(self, path: KeyPath, fn: Callable[[Any], Any]) -> Any:
        with self._lock:
            return self.set(path, fn(self.get(path)))

    def replace(self, value: Any) -> Any:
        with self._lock:
            return self._publish(value)

    def reset(self, value: Any) -> None:
        """Swap the root without notifying subscribers (value already on disk)."""
        with self._lock:
            self._value = value

    def _publish(self, value: Any) -> Any:
        previous, self._value = self._value, value
        try:
            for callback in list(self._subscribers):
                callback(value)
        except Exception:
            self._value = previous
            raise
        return value


_PENDING = object()


class StoreBinder:
    """Writes every store update to ``directory`` and tracks unsynchronized changes.

    ``has_changes`` compares references, not contents: any update counts as a
    change until ``mark_synchronized`` moves the baseline.
    """

    def __init__(self, store: ReactiveStore, directory: Path, *, lock: Optional[threading.RLock] = None):
        self.store = store
        self.directory = Path(directory)
        self._lock = lock or threading.RLock()
        self._current = store.value
        self._baseline = self._current
        self._unsubscribe: Optional[Callable[[], None]] = store.subscribe(self._on_change)

    def _on_change(self, value: Any) -> None:
        with self._lock:
            write(value, self.directory)
            self._current = value

    @property
    def value(self) -> Any:
        return self._current

    @property
    def has_changes(self) -> bool:
        return self._current is not self._baseline

    def mark_synchronized(self) -> None:
        with self._lock:
            self._baseline = self._current

    def reset(self, value: Any) -> None:
        """Adopt a value re-read from disk without writing it back.

        Unsynchronized changes stay reported: they are part of what was read.
        """
        with self._lock:
            pending = self.has_changes
            self._current = value
            self._baseline = _PENDING if pending else value

    def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
