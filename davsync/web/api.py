from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone

from fastapi import APIRouter, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from davsync.core.config import load_config
from davsync.sync.service import SyncService

router = APIRouter(prefix="/api")

SSE_KEEPALIVE_SEC = 15

_service: SyncService | None = None


class LoginRequest(BaseModel):
    server: str
    username: str
    password: str
    interval: int | None = Field(default=None, ge=1, le=1440)


class ConfirmationAnswer(BaseModel):
    proceed: bool


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def get_service() -> SyncService:
    global _service
    if _service is None:
        _service = SyncService(load_config())
    return _service


def set_service(service: SyncService | None) -> None:
    global _service
    _service = service


@router.get("/healthz")
def healthz():
    return {
        "ok": True,
        "status": "alive",
        "checked_at": _now_iso(),
    }


@router.post("/session/login")
async def login(payload: LoginRequest):
    result = await get_service().login(
        payload.server,
        payload.username,
        payload.password,
        interval_minutes=payload.interval,
    )
    return result


@router.post("/session/logout")
async def logout():
    stopped = await get_service().logout()
    return {"ok": True, "stopped": stopped}


@router.post("/actions/retry")
def retry():
    triggered = get_service().retry()
    return {"ok": True, "triggered": triggered}


@router.get("/status")
def status():
    return {
        "checked_at": _now_iso(),
        **get_service().status_snapshot(),
    }


@router.get("/status/events")
async def status_events():
    service = get_service()
    queue = service.subscribe()

    async def stream():
        try:
            if service.last_event is not None:
                yield f"data: {json.dumps(service.last_event.to_dict(), ensure_ascii=False)}\n\n"
            while True:
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=SSE_KEEPALIVE_SEC)
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                yield f"data: {json.dumps(event.to_dict(), ensure_ascii=False)}\n\n"
        finally:
            service.unsubscribe(queue)

    return StreamingResponse(stream(), media_type="text/event-stream")


@router.get("/confirmations")
def confirmations():
    items = get_service().confirmations.pending()
    return {"count": len(items), "items": items}


@router.post("/confirmations/{prompt_id}")
def answer_confirmation(prompt_id: int, payload: ConfirmationAnswer):
    if not get_service().confirmations.answer(prompt_id, payload.proceed):
        raise HTTPException(status_code=404, detail="confirmation_not_pending")
    return {"ok": True, "id": prompt_id, "proceed": payload.proceed}


@router.get("/history")
def history(limit: int = 50):
    limit_sanitized = min(max(int(limit), 1), 500)
    items = get_service().read_history(limit=limit_sanitized)
    return {
        "limit": limit_sanitized,
        "count": len(items),
        "items": items,
    }


@router.get("/config")
def get_config():
    return get_service().cfg.redacted()
