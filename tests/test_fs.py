from __future__ import annotations

import errno
import os
import shutil
from pathlib import Path

import pytest

from gittree.fs import (
    DELETED,
    DecodeError,
    LazyTree,
    ReadError,
    WriteIOError,
    dump_scalar,
    ls,
    materialized,
    read,
    to_plain,
    write,
)


def snapshot(directory: Path) -> dict:
    """mtime of every entry below directory, keyed by relative path."""
    stamps = {}
    for root, dirs, files in os.walk(directory):
        for name in dirs + files:
            path = Path(root) / name
            stamps[path.relative_to(directory).as_posix()] = path.stat().st_mtime_ns
    return stamps


def test_round_trip(tmp_path: Path):
    value = {
        "name": "taras",
        "age": 3,
        "ratio": 1.5,
        "active": True,
        "nothing": None,
        "address": {"city": "Kyiv", "zip": "01001"},
        "tags": ["a", "b", "c"],
        "matrix": [[1, 2], [3, 4]],
    }
    write(value, tmp_path / "db")
    assert to_plain(read(tmp_path / "db")) == value


def test_scalars_keep_their_type(tmp_path: Path):
    write({"s": "1", "i": 1, "b": "true", "t": True, "n": "null"}, tmp_path)
    tree = read(tmp_path)
    assert tree["s"] == "1" and isinstance(tree["s"], str)
    assert tree["i"] == 1 and isinstance(tree["i"], int)
    assert tree["b"] == "true"
    assert tree["t"] is True
    assert tree["n"] == "null"


def test_second_write_changes_nothing(tmp_path: Path):
    value = {"a": 1, "b": {"c": "x", "d": [1, 2, 3]}}
    write(value, tmp_path)
    before = snapshot(tmp_path)
    write(value, tmp_path)
    assert snapshot(tmp_path) == before


def test_rewriting_a_read_tree_changes_nothing(tmp_path: Path):
    write({"a": 1, "b": {"c": "x"}}, tmp_path)
    before = snapshot(tmp_path)
    tree = read(tmp_path)
    to_plain(tree)
    write(tree, tmp_path)
    assert snapshot(tmp_path) == before


def test_deleted_and_omitted_keys_are_removed(tmp_path: Path):
    write({"keep": 1, "gone": 2, "dir": {"x": 1}}, tmp_path)
    keep_mtime = (tmp_path / "keep").stat().st_mtime_ns

    write({"keep": 1, "gone": DELETED, "dir": {"x": 1}}, tmp_path)
    assert not (tmp_path / "gone").exists()
    assert (tmp_path / "dir" / "x").exists()

    write({"keep": 1}, tmp_path)
    assert not (tmp_path / "dir").exists()
    assert (tmp_path / "keep").stat().st_mtime_ns == keep_mtime


def test_deleting_an_absent_key_is_fine(tmp_path: Path):
    write({"a": 1, "b": DELETED}, tmp_path)
    assert ls(read(tmp_path)) == ["a"]


def test_sequence_is_read_in_numeric_order(tmp_path: Path):
    for name in ("0", "1", "2", "10"):
        (tmp_path / name).write_bytes(dump_scalar(f"item-{name}"))
    tree = read(tmp_path)
    assert tree.is_sequence
    assert list(tree) == ["item-0", "item-1", "item-2", "item-10"]


def test_directory_without_zero_is_a_mapping(tmp_path: Path):
    write({"1": "a", "2": "b"}, tmp_path)
    tree = read(tmp_path)
    assert not tree.is_sequence
    with pytest.raises(TypeError):
        list(tree)
    assert to_plain(tree) == {"1": "a", "2": "b"}


def test_shrinking_a_sequence_removes_trailing_entries(tmp_path: Path):
    write({"items": ["a", "b", "c"]}, tmp_path)
    write({"items": ["a"]}, tmp_path)
    assert sorted(os.listdir(tmp_path / "items")) == ["0"]
    assert to_plain(read(tmp_path)) == {"items": ["a"]}


def test_read_is_lazy_and_memoized(tmp_path: Path):
    write({"a": "first", "b": "other"}, tmp_path)
    tree = read(tmp_path)
    assert materialized(tree) == {}

    assert tree["a"] == "first"
    (tmp_path / "a").write_bytes(dump_scalar("second"))
    assert tree["a"] == "first"
    assert materialized(tree) == {"a": "first"}

    assert read(tmp_path)["a"] == "second"


def test_unloaded_entries_survive_write(tmp_path: Path):
    write({"a": 1, "b": {"c": 2}}, tmp_path)
    tree = read(tmp_path).set("new", "value")
    write(tree, tmp_path)
    assert to_plain(read(tmp_path)) == {"a": 1, "b": {"c": 2}, "new": "value"}


def test_derived_tree_has_fresh_cache(tmp_path: Path):
    write({"a": "first"}, tmp_path)
    tree = read(tmp_path)
    assert tree["a"] == "first"
    (tmp_path / "a").write_bytes(dump_scalar("second"))
    derived = tree.set("b", 1)
    assert derived["a"] == "second"
    assert tree["a"] == "first"


def test_discard_marks_deletion(tmp_path: Path):
    write({"a": 1, "b": 2}, tmp_path)
    tree = read(tmp_path).discard("b")
    assert "b" not in tree
    assert ls(tree) == ["a"]
    with pytest.raises(KeyError):
        tree.discard("missing")
    write(tree, tmp_path)
    assert not (tmp_path / "b").exists()


def test_lazy_tree_written_elsewhere_is_copied(tmp_path: Path):
    write({"a": 1, "b": {"c": [1, 2]}}, tmp_path / "src")
    write(read(tmp_path / "src"), tmp_path / "dst")
    assert to_plain(read(tmp_path / "dst")) == {"a": 1, "b": {"c": [1, 2]}}


def test_git_directory_is_ignored(tmp_path: Path):
    (tmp_path / ".git").mkdir()
    (tmp_path / ".git" / "HEAD").write_text("ref: refs/heads/main\n")
    write({"a": 1}, tmp_path)
    assert ls(read(tmp_path)) == ["a"]
    write({}, tmp_path)
    assert (tmp_path / ".git" / "HEAD").exists()


def test_scalar_and_directory_replace_each_other(tmp_path: Path):
    write({"x": {"y": 1}}, tmp_path)
    write({"x": "flat"}, tmp_path)
    assert (tmp_path / "x").is_file()
    write({"x": {"y": 2}}, tmp_path)
    assert (tmp_path / "x").is_dir()
    assert to_plain(read(tmp_path)) == {"x": {"y": 2}}


def test_missing_directory_raises_read_error(tmp_path: Path):
    with pytest.raises(ReadError):
        read(tmp_path / "missing")


def test_malformed_file_raises_decode_error(tmp_path: Path):
    (tmp_path / "bad").write_text("key: [unclosed\n")
    tree = read(tmp_path)
    with pytest.raises(DecodeError) as exc_info:
        tree["bad"]
    assert exc_info.value.path == tmp_path / "bad"


def test_invalid_names_and_values_are_rejected(tmp_path: Path):
    with pytest.raises(TypeError):
        write("scalar", tmp_path)
    for name in ("", ".", "..", "a/b", ".git"):
        with pytest.raises(ValueError):
            write({name: 1}, tmp_path)


def test_read_returns_lazy_tree(tmp_path: Path):
    write({"a": 1}, tmp_path)
    tree = read(tmp_path)
    assert isinstance(tree, LazyTree)
    assert tree.directory == tmp_path
    assert "a" in tree and len(tree) == 1
    assert tree.get("missing", "default") == "default"


def test_non_utf8_file_raises_decode_error(tmp_path: Path):
    (tmp_path / "binary").write_bytes(b"\xff\xfe")
    with pytest.raises(DecodeError) as exc_info:
        read(tmp_path)["binary"]
    assert exc_info.value.path == tmp_path / "binary"
    assert isinstance(exc_info.value.__cause__, UnicodeDecodeError)


def test_filesystem_failure_raises_write_io_error(tmp_path: Path):
    (tmp_path / "file").write_text("not a directory\n")
    with pytest.raises(WriteIOError) as exc_info:
        write({"a": 1}, tmp_path / "file" / "db")
    assert isinstance(exc_info.value.__cause__, OSError)


@pytest.mark.skipif(hasattr(os, "geteuid") and os.geteuid() == 0, reason="root ignores directory permissions")
def test_read_only_directory_raises_write_io_error(tmp_path: Path):
    target = tmp_path / "ro"
    target.mkdir()
    target.chmod(0o500)
    try:
        with pytest.raises(WriteIOError):
            write({"a": 1}, target)
    finally:
        target.chmod(0o700)


def test_write_can_be_rerun_after_failure(tmp_path: Path, monkeypatch):
    original = Path.write_bytes
    calls = {"write": 0}

    def disk_full_once(self, data):  # type: ignore[no-untyped-def]
        calls["write"] += 1
        if calls["write"] == 2:
            raise OSError(errno.ENOSPC, "No space left on device")
        return original(self, data)

    monkeypatch.setattr(Path, "write_bytes", disk_full_once)
    value = {"a": 1, "b": 2, "c": 3}
    with pytest.raises(WriteIOError):
        write(value, tmp_path)
    write(value, tmp_path)
    assert to_plain(read(tmp_path)) == value


def test_moved_subtree_needs_its_source(tmp_path: Path):
    write({"b": {"x": 1, "y": {"z": 2}}}, tmp_path / "src")
    unread = read(tmp_path / "src")["b"]
    loaded = read(tmp_path / "src")["b"]
    to_plain(loaded)
    shutil.rmtree(tmp_path / "src" / "b")

    with pytest.raises(ReadError, match="source directory is gone"):
        write({"a": unread}, tmp_path / "dst")

    write({"a": loaded}, tmp_path / "dst")
    assert to_plain(read(tmp_path / "dst")) == {"a": {"x": 1, "y": {"z": 2}}}
