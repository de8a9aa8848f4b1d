from __future__ import annotations

import logging
from typing import Optional, Set

from davsync.core.errors import TransientError, WalkError

from . import paths
from .baseline import BaselineStore, Ledger
from .confirm import ConfirmationGate
from .deletions import DeletionReconciler, local_origin_plan, remote_origin_plan
from .models import Action, CycleContext, CycleSummary, RemoteSnapshot, TreeEntry
from .resolver import DEFAULT_TOLERANCE_MS, DOWNLOAD, UPLOAD, ConflictWriter, decide
from .stores import LocalStoreLike, RemoteStore

logger = logging.getLogger("sync")


class SyncEngine:
    """Runs the phases of one cycle against a remote and a local store.

    Phase order is fixed: remote-origin deletions, upload walk (which also
    handles local-origin deletions and rewrites the baseline), download walk.
    Errors from directory listings and network failures propagate; any other
    error on a single item is logged, counted and skipped. Cancelling the
    context stops the cycle at the next item or phase boundary; a transfer
    already started is finished.
    """

    def __init__(
        self,
        remote: RemoteStore,
        local: LocalStoreLike,
        baseline: BaselineStore,
        gate: ConfirmationGate,
        tolerance_ms: int = DEFAULT_TOLERANCE_MS,
    ):
        self.remote = remote
        self.local = local
        self.baseline = baseline
        self.tolerance_ms = tolerance_ms
        self.deletions = DeletionReconciler(gate)
        self.conflicts = ConflictWriter(remote, local)

    def run_cycle(self, ctx: Optional[CycleContext] = None) -> CycleSummary:
        ctx = ctx or CycleContext()
        snapshot = self.snapshot()
        ctx.summary.remote_total = len(snapshot.files)

        ctx.check_cancelled()
        self.reconcile_remote_deletions(snapshot, ctx)
        ctx.check_cancelled()
        self.upload_walk(snapshot, ctx)
        ctx.check_cancelled()
        self.download_walk(ctx)
        return ctx.summary

    def upload_pass(self, ctx: Optional[CycleContext] = None) -> CycleSummary:
        """Upload walk only; local-origin deletions are left for the next full cycle."""
        ctx = ctx or CycleContext(summary=CycleSummary(run_type="shutdown"))
        snapshot = self.snapshot()
        ctx.summary.remote_total = len(snapshot.files)
        self.upload_walk(snapshot, ctx, confirm_deletions=False)
        return ctx.summary

    def snapshot(self) -> RemoteSnapshot:
        try:
            raw = self.remote.list_tree()
        except Exception as e:
            raise WalkError("remote", "", e) from e
        return RemoteSnapshot(
            files={p: e for p, e in raw.files.items() if not paths.is_conflict_path(p)},
            dirs=set(paths.syncable(raw.dirs)),
        )

    def reconcile_remote_deletions(self, snapshot: RemoteSnapshot, ctx: CycleContext) -> None:
        ledger = self.baseline.load()
        plan = remote_origin_plan(ledger, snapshot, self.local)
        if plan.count == 0:
            return
        if not self.deletions.confirm(plan, ctx):
            return
        ctx.check_cancelled()
        self.deletions.apply_remote_origin(plan, self.local, ledger, ctx.summary)
        self.baseline.save(ledger)

    def upload_walk(self, snapshot: RemoteSnapshot, ctx: CycleContext, confirm_deletions: bool = True) -> None:
        summary = ctx.summary
        ledger = self.baseline.load()
        observed: Set[str] = set()
        on_both: Set[str] = set()
        local_dirs: Set[str] = set()

        stack = [""]
        while stack:
            current = stack.pop()
            try:
                entries = self.local.list_dir(current)
            except Exception as e:
                raise WalkError("local", current, e) from e

            for entry in entries:
                ctx.check_cancelled()
                if paths.is_conflict_path(entry.path):
                    continue
                try:
                    if entry.is_dir:
                        local_dirs.add(entry.path)
                        stack.append(entry.path)
                        if entry.path not in snapshot.dirs:
                            self.remote.mkdir(entry.path)
                            snapshot.dirs.add(entry.path)
                            logger.info("remote_dir_created path=%s", entry.path)
                        continue

                    observed.add(entry.path)
                    if self._upload_file(entry, snapshot.files.get(entry.path), ctx):
                        on_both.add(entry.path)
                except TransientError:
                    raise
                except Exception as e:
                    summary.errors += 1
                    logger.error("upload_item_failed path=%s error=%s", entry.path, e)

        summary.local_total = len(observed)

        plan = local_origin_plan(ledger, observed, local_dirs, snapshot)
        if plan.count:
            if confirm_deletions and self.deletions.confirm(plan, ctx):
                ctx.check_cancelled()
                self.deletions.apply_local_origin(plan, self.remote, ledger, summary)
            # Unconfirmed or failed deletions stay baselined so they are offered again.
            on_both.update(p for p in plan.files if p in ledger)

        self.baseline.save(Ledger(on_both))

    def _upload_file(self, local_entry: TreeEntry, remote_entry: Optional[TreeEntry], ctx: CycleContext) -> bool:
        path = local_entry.path
        action = decide(local_entry, remote_entry, self.tolerance_ms, UPLOAD)
        if action not in (Action.UPLOAD, Action.CONFLICT_UPLOAD):
            return remote_entry is not None

        if action == Action.CONFLICT_UPLOAD:
            self.conflicts.preserve_remote_remotely(path)
            ctx.conflicted.add(path)
            ctx.summary.conflicts += 1

        self.remote.write(path, self.local.read(path))
        ctx.summary.uploaded += 1
        logger.info("uploaded path=%s", path)
        self._align_local_mtime(path)
        return True

    def _align_local_mtime(self, path: str) -> None:
        try:
            stat = self.remote.stat(path)
            if stat is not None and stat.mtime_ms:
                self.local.set_mtime(path, stat.mtime_ms)
        except Exception as e:
            logger.warning("mtime_align_failed path=%s error=%s", path, e)

    def download_walk(self, ctx: CycleContext) -> None:
        summary = ctx.summary
        stack = [""]
        while stack:
            current = stack.pop()
            try:
                entries = self.remote.list_dir(current)
            except Exception as e:
                raise WalkError("remote", current, e) from e

            for entry in entries:
                ctx.check_cancelled()
                if paths.is_conflict_path(entry.path):
                    continue
                try:
                    if entry.is_dir:
                        self.local.mkdir(entry.path)
                        stack.append(entry.path)
                        continue
                    self._download_file(entry, ctx)
                except TransientError:
                    raise
                except Exception as e:
                    summary.errors += 1
                    logger.error("download_item_failed path=%s error=%s", entry.path, e)

    def _download_file(self, remote_entry: TreeEntry, ctx: CycleContext) -> None:
        path = remote_entry.path
        local_entry = self.local.stat(path)
        if local_entry is not None and local_entry.is_dir:
            logger.warning("download_skipped_kind_mismatch path=%s", path)
            return

        action = decide(local_entry, remote_entry, self.tolerance_ms, DOWNLOAD)
        if action == Action.DOWNLOAD:
            self.local.write(path, self.remote.read(path))
            if remote_entry.mtime_ms:
                self.local.set_mtime(path, remote_entry.mtime_ms)
            ctx.summary.downloaded += 1
            logger.info("downloaded path=%s", path)
        elif action == Action.CONFLICT_DOWNLOAD:
            if path in ctx.conflicted:
                logger.info("conflict_already_preserved path=%s", path)
                return
            self.conflicts.preserve_remote_locally(path)
            ctx.conflicted.add(path)
            ctx.summary.conflicts += 1
