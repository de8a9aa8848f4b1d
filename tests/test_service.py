import asyncio
from pathlib import Path

from davsync.core.config import AppConfig
from davsync.core.errors import AuthError
from davsync.sync.baseline import BaselineStore, Ledger
from davsync.sync.confirm import StaticGate
from davsync.sync.service import SyncService

from .fakes import T0, FakeRemote, write_local


def _cfg(tmp_path: Path) -> AppConfig:
    cfg = AppConfig()
    cfg.sync.local_root = str(tmp_path / "local")
    cfg.state.baseline_file = str(tmp_path / "runtime" / "baseline.json")
    cfg.state.history_file = str(tmp_path / "runtime" / "run_history.jsonl")
    cfg.logging.file = str(tmp_path / "runtime" / "service.log")
    return cfg


class _RejectingClient:
    def probe(self):
        raise AuthError("http_401: PROPFIND /")


def test_login_failure_reports_and_keeps_no_session(tmp_path: Path):
    service = SyncService(_cfg(tmp_path), client_factory=lambda *_: _RejectingClient())

    result = asyncio.run(service.login("https://cloud.example.com", "alice", "bad"))

    assert result["status"] == "failed"
    assert "http_401" in result["message"]
    assert service.session is None
    assert service.last_event.status == "error"
    assert service.retry() is False


def test_login_runs_initial_cycle_and_records_history(tmp_path: Path):
    remote = FakeRemote()
    remote.put("hello.txt", b"hi", T0)
    service = SyncService(_cfg(tmp_path), gate=StaticGate(True), client_factory=lambda *_: remote)

    async def scenario():
        events = service.subscribe()
        result = await service.login("https://cloud.example.com", "alice", "pw", interval_minutes=10)
        await asyncio.gather(*list(service.session.orchestrator._cycles))
        snapshot = service.status_snapshot()
        stopped = await service.logout()
        seen = []
        while not events.empty():
            seen.append(events.get_nowait())
        return result, snapshot, stopped, seen

    result, snapshot, stopped, seen = asyncio.run(scenario())

    assert result == {"status": "sync-loop-started"}
    assert (tmp_path / "local" / "hello.txt").read_bytes() == b"hi"
    assert snapshot["active"] is True
    assert snapshot["base_interval_sec"] == 600
    assert snapshot["last_summary"]["downloaded"] == 1
    assert stopped is True
    assert [e.message for e in seen][0] == "Login successful, sync starting"
    assert seen[-1].message == "Sync stopped"

    history = service.read_history()
    assert len(history) == 1
    assert history[0]["run_type"] == "initial"
    assert history[0]["status"] == "success"


def test_logout_during_prompt_cancels_the_running_cycle(tmp_path: Path):
    cfg = _cfg(tmp_path)
    write_local(tmp_path / "local", "a.txt", b"a", T0)
    BaselineStore(cfg.state.baseline_file).save(Ledger(["a.txt"]))
    remote = FakeRemote()
    service = SyncService(cfg, client_factory=lambda *_: remote)

    async def scenario():
        events = service.subscribe()
        await service.login("https://cloud.example.com", "alice", "pw")
        session = service.session
        for _ in range(200):
            if service.confirmations.pending():
                break
            await asyncio.sleep(0.01)
        prompts = service.confirmations.pending()
        cycles = list(session.orchestrator._cycles)

        await service.logout()
        summaries = await asyncio.gather(*cycles)
        late = session.confirmations.confirm("Delete", 1, ["a.txt"])
        seen = []
        while not events.empty():
            seen.append(events.get_nowait().message)
        return prompts, summaries, late, seen

    prompts, summaries, late, seen = asyncio.run(scenario())

    assert prompts[0]["preview"] == ["a.txt"]
    assert summaries[0].status == "cancelled"
    assert [c for c in remote.calls if c[0] != "probe"] == []
    assert (tmp_path / "local" / "a.txt").read_bytes() == b"a"
    assert late is False
    assert service.confirmations.pending() == []
    assert seen[-1] == "Sync stopped"
    assert BaselineStore(cfg.state.baseline_file).load().paths() == ["a.txt"]


def test_sessions_do_not_share_prompts(tmp_path: Path):
    service = SyncService(_cfg(tmp_path), client_factory=lambda *_: FakeRemote())

    first = service.make_session("https://cloud.example.com", "alice", FakeRemote())
    second = service.make_session("https://cloud.example.com", "alice", FakeRemote())

    assert first.confirmations is not second.confirmations
    assert first.engine.deletions.gate is first.confirmations
    assert service.confirmations.answer(1, True) is False


def test_shutdown_uploads_pending_local_changes(tmp_path: Path):
    remote = FakeRemote()
    cfg = _cfg(tmp_path)
    service = SyncService(cfg, gate=StaticGate(True), client_factory=lambda *_: remote)

    async def scenario():
        await service.login("https://cloud.example.com", "alice", "pw")
        await asyncio.gather(*list(service.session.orchestrator._cycles))
        (tmp_path / "local" / "late.txt").write_bytes(b"late")
        return await service.shutdown(5)

    summary = asyncio.run(scenario())

    assert summary.run_type == "shutdown"
    assert remote.files["late.txt"][0] == b"late"
    assert service.session is None
    assert [h["run_type"] for h in service.read_history()] == ["shutdown", "initial"]


def test_read_history_skips_garbage_lines(tmp_path: Path):
    cfg = _cfg(tmp_path)
    path = Path(cfg.state.history_file)
    path.parent.mkdir(parents=True)
    path.write_text('{"run_type": "a"}\nnot json\n{"run_type": "b"}\n', encoding="utf-8")

    items = SyncService(cfg).read_history(limit=5)

    assert [i["run_type"] for i in items] == ["b", "a"]
