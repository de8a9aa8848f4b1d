from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional, Set

from davsync.core.config import AppConfig
from davsync.providers.local_store import LocalStore
from davsync.providers.webdav import WebDAVClient, base_url_for

from .baseline import BaselineStore
from .confirm import ConfirmationGate, PendingConfirmations
from .engine import SyncEngine
from .models import CycleSummary, StatusEvent
from .orchestrator import SyncOrchestrator

logger = logging.getLogger("session")

ClientFactory = Callable[[str, str, str], Any]

_NO_SESSION = PendingConfirmations()
_NO_SESSION.close()


@dataclass
class SyncSession:
    server: str
    username: str
    client: Any
    local: LocalStore
    baseline: BaselineStore
    engine: SyncEngine
    orchestrator: SyncOrchestrator
    confirmations: PendingConfirmations


class SyncService:
    """Owns the login session and fans status events out to subscribers.

    A session exists from a successful login until logout or shutdown; no
    cycle can run without one.
    """

    def __init__(
        self,
        cfg: AppConfig,
        gate: Optional[ConfirmationGate] = None,
        client_factory: Optional[ClientFactory] = None,
    ):
        self.cfg = cfg
        self.gate = gate
        self.client_factory = client_factory or self._default_client
        self.session: Optional[SyncSession] = None
        self.last_event: Optional[StatusEvent] = None
        self._subscribers: Set[asyncio.Queue] = set()

    def _default_client(self, server: str, username: str, password: str) -> WebDAVClient:
        base_url = base_url_for(server, username, self.cfg.server.dav_path_template)
        return WebDAVClient(base_url, username, password, timeout=int(self.cfg.server.timeout_sec))

    @property
    def active(self) -> bool:
        return self.session is not None

    @property
    def confirmations(self) -> PendingConfirmations:
        """Prompts of the current session; an empty closed gate when logged out."""
        if self.session is None:
            return _NO_SESSION
        return self.session.confirmations

    def publish(self, event: StatusEvent) -> None:
        self.last_event = event
        log_level = {"ok": logging.INFO, "warning": logging.WARNING}.get(event.status, logging.ERROR)
        logger.log(log_level, "status status=%s message=%s", event.status, event.message)
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning("status_subscriber_lagging dropped=%s", event.message)

    def subscribe(self, maxsize: int = 100) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscribers.discard(queue)

    async def login(self, server: str, username: str, password: str,
                    interval_minutes: Optional[float] = None) -> dict:
        if self.session is not None:
            await self.logout()

        try:
            client = self.client_factory(server, username, password)
            await asyncio.to_thread(client.probe)
        except Exception as e:
            message = str(e) or "login_failed"
            logger.warning("login_failed server=%s user=%s error=%s", server, username, message)
            self.publish(StatusEvent("error", f"Login failed: {message}"))
            return {"status": "failed", "message": message}

        self.session = self.make_session(server, username, client, interval_minutes)
        logger.info("login_ok server=%s user=%s local_root=%s", server, username, self.session.local.root)
        self.publish(StatusEvent("ok", "Login successful, sync starting"))
        self.session.orchestrator.start()
        return {"status": "sync-loop-started"}

    def make_session(self, server: str, username: str, client: Any,
                     interval_minutes: Optional[float] = None) -> SyncSession:
        """Wire stores, engine and scheduler for `client`; nothing is started."""
        sync_cfg = self.cfg.sync
        local = LocalStore(sync_cfg.local_root, sync_cfg.exclude_dirs)
        local.ensure_root()
        baseline = BaselineStore(self.cfg.state.baseline_file)
        confirmations = PendingConfirmations()
        gate = self.gate or confirmations
        engine = SyncEngine(client, local, baseline, gate, tolerance_ms=sync_cfg.tolerance_ms)
        orchestrator = SyncOrchestrator(
            engine,
            interval_minutes=interval_minutes or sync_cfg.interval_minutes,
            backoff_threshold=sync_cfg.backoff_threshold,
            backoff_factor=sync_cfg.backoff_factor,
            max_interval_minutes=sync_cfg.max_interval_minutes,
            on_status=self.publish,
            on_summary=self.record_summary,
        )
        return SyncSession(
            server=server,
            username=username,
            client=client,
            local=local,
            baseline=baseline,
            engine=engine,
            orchestrator=orchestrator,
            confirmations=confirmations,
        )

    async def logout(self) -> bool:
        session, self.session = self.session, None
        if session is None:
            return False
        await session.orchestrator.stop()
        session.confirmations.close()
        logger.info("logout server=%s user=%s", session.server, session.username)
        self.publish(StatusEvent("ok", "Sync stopped"))
        return True

    def retry(self) -> bool:
        if self.session is None:
            return False
        return self.session.orchestrator.retry()

    async def shutdown(self, timeout_sec: Optional[float] = None) -> Optional[CycleSummary]:
        session, self.session = self.session, None
        if session is None:
            return None
        await session.orchestrator.stop()
        session.confirmations.close()
        timeout = self.cfg.sync.shutdown_timeout_sec if timeout_sec is None else timeout_sec
        summary = await session.orchestrator.shutdown(timeout)
        if summary is not None:
            self.record_summary(summary)
        return summary

    def record_summary(self, summary: CycleSummary) -> None:
        path = Path(self.cfg.state.history_file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(summary.to_dict(), ensure_ascii=False))
            f.write("\n")

    def read_history(self, limit: int = 50) -> list[dict]:
        path = Path(self.cfg.state.history_file).expanduser()
        if not path.exists():
            return []
        items: list[dict] = []
        for line in reversed(path.read_text(encoding="utf-8", errors="replace").splitlines()):
            if len(items) >= limit:
                break
            try:
                item = json.loads(line)
            except ValueError:
                continue
            if isinstance(item, dict):
                items.append(item)
        return items

    def status_snapshot(self) -> dict:
        out: dict[str, Any] = {
            "active": self.active,
            "last_event": self.last_event.to_dict() if self.last_event else None,
            "pending_confirmations": len(self.confirmations.pending()),
        }
        if self.session is None:
            return out
        orch = self.session.orchestrator
        out.update(
            {
                "server": self.session.server,
                "username": self.session.username,
                "local_root": str(self.session.local.root),
                "running": orch.running,
                "consecutive_failures": orch.consecutive_failures,
                "base_interval_sec": orch.base_interval_sec,
                "current_interval_sec": orch.current_interval_sec,
                "next_run_at": orch.next_run_at,
                "run_count": orch.run_count,
                "skipped_busy_count": orch.skipped_busy_count,
                "last_summary": orch.last_summary.to_dict() if orch.last_summary else None,
            }
        )
        return out
