import logging

import pytest

from davsync.core.errors import CycleCancelled, RemoteError, TransientError, WalkError
from davsync.sync.models import CycleContext

from .fakes import T0, write_local


def _mtime_ms(path):
    return int(path.stat().st_mtime * 1000)


def test_first_cycle_merges_both_sides_then_settles(make_engine, remote, local_root, baseline):
    engine, _gate = make_engine()
    write_local(local_root, "Docs/a.txt", b"local a", T0)
    remote.put("b.txt", b"remote b", T0)
    remote.now_ms = T0 + 5000

    first = engine.run_cycle(CycleContext())

    assert first.uploaded == 1
    assert first.downloaded == 1
    assert remote.files["Docs/a.txt"][0] == b"local a"
    assert "Docs" in remote.dirs
    assert (local_root / "b.txt").read_bytes() == b"remote b"
    # uploaded file takes the server timestamp so the next cycle sees it converged
    assert _mtime_ms(local_root / "Docs" / "a.txt") == T0 + 5000
    assert _mtime_ms(local_root / "b.txt") == T0

    for _ in range(2):
        again = engine.run_cycle(CycleContext())
        assert again.changed == 0
        assert again.errors == 0
    assert baseline.load().paths() == ["Docs/a.txt", "b.txt"]


def test_timestamps_within_tolerance_are_left_alone(make_engine, remote, local_root):
    engine, _gate = make_engine()
    write_local(local_root, "a.txt", b"local", T0)
    remote.put("a.txt", b"remote", T0 + 1500)

    summary = engine.run_cycle(CycleContext())

    assert summary.changed == 0
    assert remote.files["a.txt"][0] == b"remote"
    assert (local_root / "a.txt").read_bytes() == b"local"


def test_local_newer_is_uploaded(make_engine, remote, local_root):
    engine, _gate = make_engine()
    write_local(local_root, "a.txt", b"edited", T0 + 60_000)
    remote.put("a.txt", b"old", T0)
    remote.now_ms = T0 + 61_000

    summary = engine.run_cycle(CycleContext())

    assert summary.uploaded == 1
    assert summary.conflicts == 0
    assert remote.files["a.txt"] == (b"edited", T0 + 61_000)


def test_remote_newer_keeps_local_and_preserves_remote(make_engine, remote, local_root):
    engine, _gate = make_engine()
    write_local(local_root, "a.txt", b"local", T0)
    remote.put("a.txt", b"remote", T0 + 10_000)
    remote.now_ms = T0 + 20_000

    summary = engine.run_cycle(CycleContext())

    assert summary.conflicts == 1
    assert summary.uploaded == 1
    assert remote.files["a.txt"][0] == b"local"
    assert (local_root / "a.txt").read_bytes() == b"local"
    artifacts = [p for p in remote.files if ".conflict-remote-" in p]
    assert len(artifacts) == 1
    assert artifacts[0].startswith("a.conflict-remote-") and artifacts[0].endswith(".txt")
    assert remote.files[artifacts[0]][0] == b"remote"
    # the artifact is not mirrored back down
    assert sorted(p.name for p in local_root.iterdir()) == ["a.txt"]

    assert engine.run_cycle(CycleContext()).changed == 0


def test_download_walk_stores_newer_remote_beside_local(make_engine, remote, local_root):
    engine, _gate = make_engine()
    write_local(local_root, "a.txt", b"local", T0)
    remote.put("a.txt", b"remote", T0 + 10_000)
    ctx = CycleContext()

    engine.download_walk(ctx)

    assert ctx.summary.conflicts == 1
    assert (local_root / "a.txt").read_bytes() == b"local"
    artifacts = [p for p in local_root.iterdir() if ".conflict-remote-" in p.name]
    assert len(artifacts) == 1
    assert artifacts[0].read_bytes() == b"remote"


def test_conflict_artifacts_are_never_synced(make_engine, remote, local_root, baseline):
    engine, _gate = make_engine()
    write_local(local_root, "x.conflict-remote-20240102-030405.txt", b"old", T0)
    remote.put("y.conflict-local-20240102-030405.txt", b"old", T0)

    summary = engine.run_cycle(CycleContext())

    assert summary.changed == 0
    assert "x.conflict-remote-20240102-030405.txt" not in remote.files
    assert not (local_root / "y.conflict-local-20240102-030405.txt").exists()
    assert len(baseline.load()) == 0


def test_local_deletion_propagates_after_consent(make_engine, remote, local_root, baseline):
    engine, gate = make_engine(answer=True)
    write_local(local_root, "a.txt", b"a", T0)
    write_local(local_root, "b.txt", b"b", T0)
    remote.put("a.txt", b"a", T0)
    remote.put("b.txt", b"b", T0)
    engine.run_cycle(CycleContext())
    (local_root / "a.txt").unlink()

    summary = engine.run_cycle(CycleContext())

    assert summary.remote_deleted == 1
    assert "a.txt" not in remote.files
    assert not (local_root / "a.txt").exists()
    assert baseline.load().paths() == ["b.txt"]
    assert gate.prompts[0]["count"] == 1
    assert gate.prompts[0]["preview"] == ["a.txt"]


def test_declined_local_deletion_restores_file(make_engine, remote, local_root, baseline):
    engine, gate = make_engine(answer=False)
    write_local(local_root, "a.txt", b"a", T0)
    remote.put("a.txt", b"a", T0)
    engine.run_cycle(CycleContext())
    (local_root / "a.txt").unlink()

    summary = engine.run_cycle(CycleContext())

    assert summary.deletions_declined == 1
    assert summary.remote_deleted == 0
    assert "a.txt" in remote.files
    assert (local_root / "a.txt").read_bytes() == b"a"
    assert "a.txt" in baseline.load()
    assert len(gate.prompts) == 1


def test_remote_deletion_propagates_after_consent(make_engine, remote, local_root, baseline):
    engine, gate = make_engine(answer=True)
    write_local(local_root, "keep.txt", b"k", T0)
    write_local(local_root, "sub/b.txt", b"b", T0)
    remote.put("keep.txt", b"k", T0)
    remote.put("sub/b.txt", b"b", T0)
    engine.run_cycle(CycleContext())
    remote.delete("sub")

    summary = engine.run_cycle(CycleContext())

    assert summary.local_deleted == 1
    assert summary.dirs_deleted == 1
    assert not (local_root / "sub").exists()
    assert baseline.load().paths() == ["keep.txt"]
    assert gate.prompts[0]["preview"] == ["sub/", "sub/b.txt"]
    assert "sub/b.txt" not in remote.files


def test_declined_remote_deletion_reuploads(make_engine, remote, local_root, baseline):
    engine, gate = make_engine(answer=False)
    write_local(local_root, "a.txt", b"a", T0)
    remote.put("a.txt", b"a", T0)
    engine.run_cycle(CycleContext())
    remote.delete("a.txt")

    summary = engine.run_cycle(CycleContext())

    assert summary.deletions_declined == 1
    assert summary.local_deleted == 0
    assert (local_root / "a.txt").read_bytes() == b"a"
    assert "a.txt" in baseline.load()
    assert summary.uploaded == 1
    assert remote.files["a.txt"][0] == b"a"
    assert len(gate.prompts) == 1


def test_new_local_dir_is_created_remotely_not_deleted(make_engine, remote, local_root):
    engine, gate = make_engine(answer=True)
    (local_root / "empty").mkdir()

    summary = engine.run_cycle(CycleContext())

    assert "empty" in remote.dirs
    assert summary.changed == 0
    assert gate.prompts == []


def test_excluded_dirs_are_skipped(make_engine, remote, local_root):
    engine, _gate = make_engine()
    write_local(local_root, ".git/config", b"cfg", T0)

    engine.run_cycle(CycleContext())

    assert ".git/config" not in remote.files
    assert ".git" not in remote.dirs


def test_listing_failure_aborts_cycle(make_engine, remote, baseline):
    engine, _gate = make_engine()
    remote.list_error = TransientError("get_unreachable")

    with pytest.raises(WalkError) as exc_info:
        engine.run_cycle(CycleContext())

    assert exc_info.value.transient is True
    assert not baseline.path.exists()


def test_upload_pass_skips_deletions(make_engine, remote, local_root, baseline):
    engine, gate = make_engine(answer=True)
    write_local(local_root, "a.txt", b"a", T0)
    remote.put("a.txt", b"a", T0)
    engine.run_cycle(CycleContext())
    (local_root / "a.txt").unlink()
    write_local(local_root, "new.txt", b"n", T0)

    summary = engine.upload_pass()

    assert summary.run_type == "shutdown"
    assert summary.uploaded == 1
    assert "a.txt" in remote.files
    assert gate.prompts == []
    assert baseline.load().paths() == ["a.txt", "new.txt"]


def test_failed_mtime_alignment_does_not_duplicate_artifact(make_engine, remote, local_root, monkeypatch, caplog):
    engine, _gate = make_engine()
    write_local(local_root, "a.txt", b"local", T0)
    remote.put("a.txt", b"remote", T0 + 10_000)
    remote.now_ms = T0 + 20_000
    stat = remote.stat

    def failing_stat(path):
        if path == "a.txt":
            raise RemoteError("http_409: PROPFIND /a.txt", status_code=409)
        return stat(path)

    monkeypatch.setattr(remote, "stat", failing_stat)

    with caplog.at_level(logging.WARNING, logger="sync"):
        summary = engine.run_cycle(CycleContext())

    assert "mtime_align_failed path=a.txt" in caplog.text
    # local kept its old timestamp, so the download walk sees remote newer again
    assert _mtime_ms(local_root / "a.txt") == T0
    assert summary.conflicts == 1
    assert summary.errors == 0
    remote_artifacts = [p for p in remote.files if ".conflict-" in p]
    local_artifacts = [p.name for p in local_root.iterdir() if ".conflict-" in p.name]
    assert len(remote_artifacts) == 1
    assert local_artifacts == []
    assert remote.files["a.txt"][0] == b"local"


def test_cancelled_context_stops_before_touching_either_side(make_engine, remote, local_root, baseline):
    engine, gate = make_engine(answer=True)
    write_local(local_root, "a.txt", b"a", T0)
    remote.put("b.txt", b"b", T0)
    ctx = CycleContext()
    ctx.cancel()

    with pytest.raises(CycleCancelled):
        engine.run_cycle(ctx)

    assert "a.txt" not in remote.files
    assert not (local_root / "b.txt").exists()
    assert gate.prompts == []
    assert not baseline.path.exists()
