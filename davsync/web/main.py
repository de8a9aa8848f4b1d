from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from davsync import __version__
from davsync.core.config import AppConfig, load_config
from davsync.sync.service import SyncService
from davsync.web.api import router as api_router, set_service


def build_app(cfg: AppConfig | None = None, service: SyncService | None = None) -> FastAPI:
    cfg = cfg or load_config()
    service = service or SyncService(cfg)
    set_service(service)

    @asynccontextmanager
    async def lifespan(_api: FastAPI):
        try:
            yield
        finally:
            await service.shutdown(cfg.sync.shutdown_timeout_sec)

    api = FastAPI(title="davsync", version=__version__, lifespan=lifespan)
    api.include_router(api_router)
    return api


def main():
    import uvicorn

    from davsync.core.logging_setup import setup_logging

    cfg = load_config()
    setup_logging(cfg.logging.level, cfg.logging.file)

    uvicorn.run(
        build_app(cfg),
        host=cfg.web_bind_host,
        port=cfg.web_port,
        log_level=cfg.logging.level.lower(),
        log_config=None,
    )


if __name__ == "__main__":
    main()
