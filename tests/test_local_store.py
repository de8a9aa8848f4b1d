from pathlib import Path

import pytest

from davsync.providers.local_store import LocalStore

from .fakes import T0, write_local


def test_list_dir_returns_sorted_entries_and_skips_excluded(local, local_root: Path):
    write_local(local_root, "b.txt", b"bb", T0)
    write_local(local_root, "a/x.txt", b"x", T0)
    write_local(local_root, ".git/HEAD", b"ref", T0)

    entries = local.list_dir("")

    assert [(e.path, e.kind) for e in entries] == [("a", "directory"), ("b.txt", "file")]
    assert entries[1].mtime_ms == T0
    assert entries[1].size == 2
    assert [e.path for e in local.list_dir("a")] == ["a/x.txt"]


def test_list_dirs_skips_conflict_marked(local, local_root: Path):
    (local_root / "a" / "b").mkdir(parents=True)
    (local_root / "old.conflict-remote-20240102-030405").mkdir()
    (local_root / ".git" / "objects").mkdir(parents=True)

    assert local.list_dirs() == ["a", "a/b"]


def test_write_replaces_atomically_and_creates_parents(local, local_root: Path):
    local.write("deep/dir/f.bin", b"one")
    local.write("deep/dir/f.bin", b"two")

    assert (local_root / "deep" / "dir" / "f.bin").read_bytes() == b"two"
    assert [p.name for p in (local_root / "deep" / "dir").iterdir()] == ["f.bin"]


def test_set_mtime_round_trips_milliseconds(local, local_root: Path):
    write_local(local_root, "a.txt", b"a", T0)
    local.set_mtime("a.txt", T0 + 1234)
    assert local.stat("a.txt").mtime_ms == T0 + 1234
    assert local.stat("missing.txt") is None


def test_delete_empty_dir_guards(local, local_root: Path):
    write_local(local_root, "full/a.txt", b"a", T0)

    with pytest.raises(ValueError):
        local.delete_empty_dir("")
    with pytest.raises(OSError):
        local.delete_empty_dir("full")

    local.delete_file("full/a.txt")
    local.delete_file("full/a.txt")
    local.delete_empty_dir("full")
    assert not local.exists("full")


def test_root_is_created_on_demand(tmp_path: Path):
    store = LocalStore(tmp_path / "new-root")
    assert store.list_dirs() == []
    store.ensure_root()
    assert (tmp_path / "new-root").is_dir()
