from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Set

from davsync.core.errors import CycleCancelled

FILE = "file"
DIRECTORY = "directory"


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


@dataclass(frozen=True)
class TreeEntry:
    path: str
    kind: str = FILE
    mtime_ms: int = 0
    size: int = 0

    @property
    def is_dir(self) -> bool:
        return self.kind == DIRECTORY


@dataclass
class RemoteSnapshot:
    files: Dict[str, TreeEntry] = field(default_factory=dict)
    dirs: Set[str] = field(default_factory=set)


class Action(str, Enum):
    UPLOAD = "upload"
    DOWNLOAD = "download"
    NOOP = "noop"
    # Remote is newer beyond tolerance while uploading: back up remote, then upload.
    CONFLICT_UPLOAD = "conflict_upload"
    # Remote is newer beyond tolerance while downloading: keep local, store remote beside it.
    CONFLICT_DOWNLOAD = "conflict_download"


@dataclass
class CycleSummary:
    run_type: str = "scheduled"
    status: str = "running"
    started_at: str = field(default_factory=now_iso)
    finished_at: Optional[str] = None

    local_total: int = 0
    remote_total: int = 0
    uploaded: int = 0
    downloaded: int = 0
    conflicts: int = 0
    local_deleted: int = 0
    remote_deleted: int = 0
    dirs_deleted: int = 0
    deletions_declined: int = 0
    errors: int = 0
    fatal_error: Optional[str] = None

    def finish(self, status: str, fatal_error: Optional[str] = None):
        self.status = status
        self.fatal_error = fatal_error
        self.finished_at = now_iso()

    @property
    def changed(self) -> int:
        return (
            self.uploaded
            + self.downloaded
            + self.conflicts
            + self.local_deleted
            + self.remote_deleted
            + self.dirs_deleted
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_type": self.run_type,
            "status": self.status,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "local_total": self.local_total,
            "remote_total": self.remote_total,
            "uploaded": self.uploaded,
            "downloaded": self.downloaded,
            "conflicts": self.conflicts,
            "local_deleted": self.local_deleted,
            "remote_deleted": self.remote_deleted,
            "dirs_deleted": self.dirs_deleted,
            "deletions_declined": self.deletions_declined,
            "errors": self.errors,
            "fatal_error": self.fatal_error,
        }


@dataclass
class CycleContext:
    """State scoped to one cycle attempt; discarded when the cycle ends."""

    summary: CycleSummary = field(default_factory=CycleSummary)
    declined_fingerprint: Optional[str] = None
    # Paths that already received a conflict artifact during this cycle.
    conflicted: Set[str] = field(default_factory=set)
    # Set from the event loop; the worker checks it between items and phases.
    cancelled: threading.Event = field(default_factory=threading.Event, repr=False)

    def cancel(self):
        self.cancelled.set()

    def check_cancelled(self):
        if self.cancelled.is_set():
            raise CycleCancelled()

    def clear(self):
        self.declined_fingerprint = None
        self.conflicted.clear()


@dataclass(frozen=True)
class StatusEvent:
    status: str  # ok | warning | error
    message: str
    at: str = field(default_factory=now_iso)

    def to_dict(self) -> Dict[str, str]:
        return {"status": self.status, "message": self.message, "at": self.at}
