from __future__ import annotations

import os
from pathlib import Path

from pydantic import BaseModel, Field

PROJECT_ROOT = Path(os.environ.get("DAVSYNC_HOME", Path.home() / ".davsync"))
RUNTIME_DIR = PROJECT_ROOT / "runtime"
DEFAULT_CONFIG_PATH = Path(os.environ.get("DAVSYNC_CONFIG", PROJECT_ROOT / "config.yaml"))
DEFAULT_CONFIG_TEMPLATE_PATH = PROJECT_ROOT / "config.yaml.example"
DEFAULT_LOCAL_ROOT = str(Path.home() / "Nextcloud-Temp")


class ServerConfig(BaseModel):
    url: str = ""
    username: str = ""
    password: str = ""
    # Nextcloud layout; `{username}` is URL-quoted before substitution.
    dav_path_template: str = "remote.php/dav/files/{username}/"
    timeout_sec: int = Field(default=30, ge=1, le=600)


class SyncConfig(BaseModel):
    local_root: str = DEFAULT_LOCAL_ROOT
    interval_minutes: int = Field(default=5, ge=1, le=1440)
    # Timestamp differences within this window count as converged.
    tolerance_ms: int = Field(default=2000, ge=0, le=600000)
    backoff_threshold: int = Field(default=3, ge=1)
    backoff_factor: int = Field(default=2, ge=1)
    max_interval_minutes: int = Field(default=60, ge=1, le=1440)
    shutdown_timeout_sec: float = Field(default=15.0, ge=0)
    exclude_dirs: list[str] = Field(default_factory=lambda: [".git", "__pycache__"])


class StateConfig(BaseModel):
    baseline_file: str = str(RUNTIME_DIR / "baseline.json")
    history_file: str = str(RUNTIME_DIR / "run_history.jsonl")


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file: str = str(RUNTIME_DIR / "service.log")


class AppConfig(BaseModel):
    server: ServerConfig = Field(default_factory=ServerConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    state: StateConfig = Field(default_factory=StateConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    web_bind_host: str = "127.0.0.1"
    web_port: int = 8765

    def redacted(self) -> dict:
        data = self.model_dump()
        if data["server"].get("password"):
            data["server"]["password"] = "***"
        return data


def ensure_runtime_dirs(cfg: AppConfig):
    Path(cfg.logging.file).expanduser().parent.mkdir(parents=True, exist_ok=True)
    Path(cfg.state.baseline_file).expanduser().parent.mkdir(parents=True, exist_ok=True)
    Path(cfg.state.history_file).expanduser().parent.mkdir(parents=True, exist_ok=True)


def _dump(cfg: AppConfig) -> str:
    import yaml

    return yaml.safe_dump(cfg.model_dump(), allow_unicode=True, sort_keys=False)


def load_config(path: Path = DEFAULT_CONFIG_PATH) -> AppConfig:
    import yaml

    if not path.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
        if DEFAULT_CONFIG_TEMPLATE_PATH.exists():
            try:
                template_text = DEFAULT_CONFIG_TEMPLATE_PATH.read_text(encoding="utf-8")
                data = yaml.safe_load(template_text) or {}
                cfg = AppConfig.model_validate(data)
                path.write_text(template_text, encoding="utf-8")
            except Exception:
                cfg = AppConfig()
                path.write_text(_dump(cfg), encoding="utf-8")
        else:
            cfg = AppConfig()
            path.write_text(_dump(cfg), encoding="utf-8")
        ensure_runtime_dirs(cfg)
        return cfg

    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    cfg = AppConfig.model_validate(data)
    ensure_runtime_dirs(cfg)
    return cfg


def save_config(cfg: AppConfig, path: Path = DEFAULT_CONFIG_PATH):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(_dump(cfg), encoding="utf-8")
