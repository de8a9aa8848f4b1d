from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Set

from davsync.core.errors import TransientError

from . import paths
from .baseline import Ledger
from .confirm import PREVIEW_LIMIT, ConfirmationGate
from .models import CycleContext, CycleSummary, RemoteSnapshot
from .stores import LocalStoreLike, RemoteStore

REMOTE_ORIGIN = "remote_origin"
LOCAL_ORIGIN = "local_origin"

TITLES = {
    REMOTE_ORIGIN: "Delete local copies of items removed on the server",
    LOCAL_ORIGIN: "Delete server copies of items removed locally",
}

logger = logging.getLogger("sync")


@dataclass
class DeletionPlan:
    kind: str
    files: List[str] = field(default_factory=list)
    dirs: List[str] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.files) + len(self.dirs)

    def fingerprint(self) -> str:
        return json.dumps(
            {"kind": self.kind, "files": sorted(self.files), "dirs": sorted(self.dirs)},
            sort_keys=True,
            ensure_ascii=False,
        )

    def preview(self, limit: int = PREVIEW_LIMIT) -> List[str]:
        items = [f"{d}/" for d in sorted(self.dirs)] + sorted(self.files)
        return items[:limit]

    def dirs_deepest_first(self) -> List[str]:
        return sorted(self.dirs, key=lambda d: (-paths.depth(d), d))


def _known_dirs(ledger: Iterable[str]) -> Set[str]:
    known: Set[str] = set()
    for p in ledger:
        known.update(paths.ancestors(p))
    return known


def remote_origin_plan(ledger: Ledger, snapshot: RemoteSnapshot, local: LocalStoreLike) -> DeletionPlan:
    """Items gone from the server since the last cycle that still exist locally.

    Directories only qualify when the ledger knew about them (they held a
    baselined file); a directory created locally and not yet uploaded is
    never a deletion candidate.
    """
    files = [
        p for p in ledger.paths()
        if not paths.is_conflict_path(p) and p not in snapshot.files and local.exists(p)
    ]
    known = _known_dirs(ledger.paths())
    dirs = [
        d for d in local.list_dirs()
        if not paths.is_conflict_path(d) and d not in snapshot.dirs and d in known
    ]
    return DeletionPlan(REMOTE_ORIGIN, files=sorted(files), dirs=sorted(dirs))


def local_origin_plan(ledger: Ledger, observed: Set[str], local_dirs: Set[str],
                      snapshot: RemoteSnapshot) -> DeletionPlan:
    """Items gone locally since the last cycle that still exist on the server."""
    files = [
        p for p in ledger.paths()
        if not paths.is_conflict_path(p) and p not in observed and p in snapshot.files
    ]
    known = _known_dirs(ledger.paths())
    dirs = [
        d for d in snapshot.dirs
        if not paths.is_conflict_path(d) and d not in local_dirs and d in known
    ]
    return DeletionPlan(LOCAL_ORIGIN, files=sorted(files), dirs=sorted(dirs))


class DeletionReconciler:
    def __init__(self, gate: ConfirmationGate):
        self.gate = gate

    def confirm(self, plan: DeletionPlan, ctx: CycleContext) -> bool:
        if plan.count == 0:
            return True

        fingerprint = plan.fingerprint()
        if ctx.declined_fingerprint == fingerprint:
            logger.info("deletion_prompt_suppressed kind=%s count=%s", plan.kind, plan.count)
            return False

        ctx.check_cancelled()
        proceed = bool(self.gate.confirm(TITLES.get(plan.kind, plan.kind), plan.count, plan.preview()))
        if not proceed:
            ctx.declined_fingerprint = fingerprint
            ctx.summary.deletions_declined += plan.count
            logger.info("deletion_declined kind=%s count=%s", plan.kind, plan.count)
        return proceed

    def apply_remote_origin(self, plan: DeletionPlan, local: LocalStoreLike, ledger: Ledger,
                            summary: CycleSummary) -> None:
        for path in plan.files:
            try:
                local.delete_file(path)
                ledger.discard(path)
                summary.local_deleted += 1
                logger.info("local_deleted path=%s", path)
            except Exception as e:
                summary.errors += 1
                logger.error("local_delete_failed path=%s error=%s", path, e)

        for directory in plan.dirs_deepest_first():
            try:
                if not local.exists(directory):
                    continue
                if local.list_dir(directory):
                    logger.info("local_dir_kept_not_empty path=%s", directory)
                    continue
                local.delete_empty_dir(directory)
                summary.dirs_deleted += 1
                logger.info("local_dir_deleted path=%s", directory)
                self._prune_local_ancestors(local, directory, summary)
            except Exception as e:
                summary.errors += 1
                logger.error("local_dir_delete_failed path=%s error=%s", directory, e)

    def _prune_local_ancestors(self, local: LocalStoreLike, path: str, summary: CycleSummary) -> None:
        for parent in paths.ancestors(path):
            if not local.exists(parent) or local.list_dir(parent):
                break
            local.delete_empty_dir(parent)
            summary.dirs_deleted += 1
            logger.info("local_dir_pruned path=%s", parent)

    def apply_local_origin(self, plan: DeletionPlan, remote: RemoteStore, ledger: Ledger,
                           summary: CycleSummary) -> None:
        for path in plan.files:
            try:
                remote.delete(path)
                ledger.discard(path)
                summary.remote_deleted += 1
                logger.info("remote_deleted path=%s", path)
            except TransientError:
                raise
            except Exception as e:
                summary.errors += 1
                logger.error("remote_delete_failed path=%s error=%s", path, e)

        # DELETE on a collection is recursive, so only empty ones are removed.
        for directory in plan.dirs_deepest_first():
            try:
                if remote.list_dir(directory):
                    logger.info("remote_dir_kept_not_empty path=%s", directory)
                    continue
                remote.delete(directory)
                summary.dirs_deleted += 1
                logger.info("remote_dir_deleted path=%s", directory)
            except TransientError:
                raise
            except Exception as e:
                summary.errors += 1
                logger.error("remote_dir_delete_failed path=%s error=%s", directory, e)
