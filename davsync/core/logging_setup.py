from __future__ import annotations

import logging
from pathlib import Path

LOG_FORMAT = "%(asctime)s [%(levelname)s] [%(name)s] %(message)s"

# Served through uvicorn by `davsync serve` / `davsync-web`.
SERVER_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")
# One line per pooled connection at DEBUG.
NOISY_LOGGERS = ("urllib3",)


def _attach(root: logging.Logger, handler: logging.Handler, level: int, fmt: logging.Formatter) -> None:
    handler.setLevel(level)
    handler.setFormatter(fmt)
    root.addHandler(handler)


def setup_logging(level: str, logfile: str | None = None) -> logging.Logger:
    """Send davsync, uvicorn and requests logs to stderr and optionally a file.

    Safe to call more than once: the root handlers are replaced, not added to.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(log_level)
    for h in list(root.handlers):
        root.removeHandler(h)

    fmt = logging.Formatter(LOG_FORMAT)
    log_path = Path(logfile).expanduser() if logfile else None
    if log_path is not None:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        _attach(root, logging.FileHandler(log_path, encoding="utf-8"), log_level, fmt)
    _attach(root, logging.StreamHandler(), log_level, fmt)

    for name in SERVER_LOGGERS:
        server_logger = logging.getLogger(name)
        server_logger.handlers.clear()
        server_logger.setLevel(log_level)
        server_logger.propagate = True
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.INFO))

    root.info(
        "logging_ready level=%s file=%s",
        logging.getLevelName(log_level),
        log_path if log_path is not None else "-",
    )
    return root
