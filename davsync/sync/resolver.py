from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from . import paths
from .models import Action, TreeEntry
from .stores import LocalStoreLike, RemoteStore

UPLOAD = "upload"
DOWNLOAD = "download"

DEFAULT_TOLERANCE_MS = 2000

logger = logging.getLogger("sync")


def decide(
    local: Optional[TreeEntry],
    remote: Optional[TreeEntry],
    tolerance_ms: int = DEFAULT_TOLERANCE_MS,
    direction: str = UPLOAD,
) -> Action:
    """Decide what should happen to one file seen by a walk in `direction`.

    Only a remote version newer beyond the tolerance window depends on the
    direction. Local wins in both cases and the remote version is preserved
    as a conflict artifact. Each walk only performs the actions that belong to
    it (UPLOAD in the upload walk, DOWNLOAD in the download walk) and treats
    the rest as no-ops.
    """
    if direction not in (UPLOAD, DOWNLOAD):
        raise ValueError(f"invalid_direction: {direction}")

    if local is None and remote is None:
        return Action.NOOP
    if local is None:
        return Action.DOWNLOAD
    if remote is None:
        return Action.UPLOAD

    delta = remote.mtime_ms - local.mtime_ms
    if delta > tolerance_ms:
        return Action.CONFLICT_UPLOAD if direction == UPLOAD else Action.CONFLICT_DOWNLOAD
    if delta < -tolerance_ms:
        return Action.UPLOAD
    return Action.NOOP


class ConflictWriter:
    def __init__(self, remote: RemoteStore, local: LocalStoreLike):
        self.remote = remote
        self.local = local

    def preserve_remote_locally(self, path: str, when: datetime | None = None) -> str:
        """Store the remote version beside the untouched local file."""
        target = paths.conflict_name(path, "remote", when=when, exists=self.local.exists)
        data = self.remote.read(path)
        self.local.write(target, data)
        logger.warning("conflict_preserved_local path=%s artifact=%s", path, target)
        return target

    def preserve_remote_remotely(self, path: str, when: datetime | None = None) -> str:
        """Copy the remote version aside before the local version replaces it."""
        target = paths.conflict_name(
            path,
            "remote",
            when=when,
            exists=lambda p: self.remote.stat(p) is not None,
        )
        self.remote.copy(path, target)
        logger.warning("conflict_preserved_remote path=%s artifact=%s", path, target)
        return target
