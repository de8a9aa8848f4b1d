from __future__ import annotations

import asyncio
import logging
import threading
import time
from typing import Callable, Optional, Set

from davsync.core.errors import CycleCancelled, classify

from .models import CycleContext, CycleSummary, StatusEvent

logger = logging.getLogger("scheduler")

DEFAULT_BACKOFF_THRESHOLD = 3
DEFAULT_BACKOFF_FACTOR = 2
DEFAULT_MAX_INTERVAL_MINUTES = 60


def _minutes(seconds: float) -> str:
    value = seconds / 60
    return str(int(value)) if value == int(value) else f"{value:.1f}"


class SyncOrchestrator:
    """Schedules cycles of one engine: Idle -> Running -> Idle.

    At most one cycle runs at a time. The guard is a non-blocking lock taken
    on the event loop at cycle entry and released by the worker thread when
    the engine returns, so a cycle abandoned by its awaiting task still holds
    it until the thread is really done. Triggers that find it held are
    dropped, not queued.
    """

    def __init__(
        self,
        engine,
        interval_minutes: float = 5,
        backoff_threshold: int = DEFAULT_BACKOFF_THRESHOLD,
        backoff_factor: int = DEFAULT_BACKOFF_FACTOR,
        max_interval_minutes: float = DEFAULT_MAX_INTERVAL_MINUTES,
        on_status: Optional[Callable[[StatusEvent], None]] = None,
        on_summary: Optional[Callable[[CycleSummary], None]] = None,
    ):
        self.engine = engine
        self.base_interval_sec = float(interval_minutes) * 60
        self.current_interval_sec = self.base_interval_sec
        self.max_interval_sec = max(float(max_interval_minutes) * 60, self.base_interval_sec)
        self.backoff_threshold = backoff_threshold
        self.backoff_factor = backoff_factor
        self.on_status = on_status
        self.on_summary = on_summary

        self.consecutive_failures = 0
        self.skipped_busy_count = 0
        self.run_count = 0
        self.next_run_at: Optional[float] = None
        self.last_event: Optional[StatusEvent] = None
        self.last_summary: Optional[CycleSummary] = None

        self._cycle_lock = threading.Lock()
        self._ticker: Optional[asyncio.Task] = None
        self._cycles: Set[asyncio.Task] = set()
        self._current: Optional[CycleContext] = None
        self._closed = False

    @property
    def running(self) -> bool:
        return self._cycle_lock.locked()

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> None:
        """Arm the ticker and kick off the first cycle. Needs a running event loop."""
        if self._closed:
            raise RuntimeError("orchestrator_closed")
        self._arm(force=True)
        self._spawn("initial")
        logger.info("scheduler_started interval_min=%s", _minutes(self.current_interval_sec))

    def _arm(self, force: bool = False) -> None:
        if self._closed or (self._ticker is None and not force):
            return
        if self._ticker is not None and not self._ticker.done():
            self._ticker.cancel()
        self._ticker = asyncio.get_running_loop().create_task(self._tick_loop(), name="davsync_ticker")

    async def _tick_loop(self) -> None:
        interval = self.current_interval_sec
        while not self._closed:
            self.next_run_at = time.time() + interval
            await asyncio.sleep(interval)
            self._spawn("scheduled")

    def _spawn(self, run_type: str) -> None:
        if self._closed:
            return
        task = asyncio.get_running_loop().create_task(self.run_cycle(run_type))
        self._cycles.add(task)
        task.add_done_callback(self._cycles.discard)

    def _guarded(self, fn, ctx: CycleContext):
        try:
            return fn(ctx)
        finally:
            ctx.clear()
            self._cycle_lock.release()

    async def run_cycle(self, run_type: str = "manual") -> Optional[CycleSummary]:
        if self._closed:
            return None
        if not self._cycle_lock.acquire(blocking=False):
            self.skipped_busy_count += 1
            logger.warning("cycle_skipped_busy run_type=%s", run_type)
            return None

        ctx = CycleContext(summary=CycleSummary(run_type=run_type))
        summary = ctx.summary
        self._current = ctx
        logger.info("cycle_started run_type=%s", run_type)
        try:
            await asyncio.to_thread(self._guarded, self.engine.run_cycle, ctx)
        except CycleCancelled:
            summary.finish("cancelled")
            logger.warning("cycle_cancelled run_type=%s uploaded=%s downloaded=%s",
                           run_type, summary.uploaded, summary.downloaded)
        except Exception as e:
            summary.finish("failed", str(e))
            self._on_failure(e)
        else:
            summary.finish("warning" if summary.errors else "success")
            self._on_success(summary)
        finally:
            if self._current is ctx:
                self._current = None

        self.run_count += 1
        self.last_summary = summary
        if self.on_summary is not None:
            try:
                self.on_summary(summary)
            except Exception:
                logger.exception("cycle_summary_callback_failed")
        return summary

    def _emit(self, status: str, message: str) -> None:
        if self._closed:
            logger.debug("status_suppressed_closed message=%s", message)
            return
        event = StatusEvent(status=status, message=message)
        self.last_event = event
        if self.on_status is not None:
            self.on_status(event)

    def _on_success(self, summary: CycleSummary) -> None:
        backed_off = self.current_interval_sec != self.base_interval_sec
        self.consecutive_failures = 0
        logger.info(
            "cycle_completed uploaded=%s downloaded=%s conflicts=%s deleted=%s errors=%s",
            summary.uploaded,
            summary.downloaded,
            summary.conflicts,
            summary.local_deleted + summary.remote_deleted,
            summary.errors,
        )
        if backed_off:
            self.current_interval_sec = self.base_interval_sec
            self._arm()
            self._emit("ok", f"Connection restored, syncing every {_minutes(self.current_interval_sec)} minutes again")
            return
        if summary.errors:
            self._emit("warning", f"Sync finished with {summary.errors} skipped item(s)")
            return
        self._emit(
            "ok",
            f"Sync complete: {summary.uploaded} uploaded, {summary.downloaded} downloaded, "
            f"{summary.conflicts} conflict(s)",
        )

    def _on_failure(self, exc: BaseException) -> None:
        kind = classify(exc)
        self.consecutive_failures += 1
        logger.error("cycle_failed kind=%s failures=%s error=%s", kind, self.consecutive_failures, exc)

        if self.consecutive_failures >= self.backoff_threshold:
            backed_off = min(self.current_interval_sec * self.backoff_factor, self.max_interval_sec)
            if backed_off != self.current_interval_sec:
                self.current_interval_sec = backed_off
                self._arm()
            self._emit(
                "error",
                f"Sync slowed to {_minutes(self.current_interval_sec)} minutes after "
                f"{self.consecutive_failures} failed attempts: {exc}",
            )
            return

        if kind == "transient":
            self._emit("warning", f"Server unreachable, retrying in {_minutes(self.current_interval_sec)} minutes: {exc}")
        elif kind == "auth":
            self._emit("error", f"Authentication rejected by server: {exc}")
        else:
            self._emit("error", f"Sync failed: {exc}")

    def retry(self) -> bool:
        if self._closed:
            return False
        self.consecutive_failures = 0
        self.current_interval_sec = self.base_interval_sec
        self._arm(force=True)
        self._spawn("retry")
        logger.info("retry_requested interval_min=%s", _minutes(self.current_interval_sec))
        return True

    async def stop(self) -> None:
        """Stop scheduling and cancel the running cycle, if any.

        The worker notices at its next item or phase boundary; the cycle lock
        stays held until it has.
        """
        self._closed = True
        if self._current is not None:
            self._current.cancel()
        ticker, self._ticker = self._ticker, None
        self.next_run_at = None
        if ticker is not None and not ticker.done():
            ticker.cancel()
            try:
                await ticker
            except asyncio.CancelledError:
                pass
        logger.info("scheduler_stopped")

    async def shutdown(self, timeout_sec: float) -> Optional[CycleSummary]:
        """Stop scheduling, then try one upload pass within `timeout_sec`."""
        await self.stop()
        if not self._cycle_lock.acquire(blocking=False):
            logger.warning("shutdown_upload_skipped cycle_in_progress")
            return None

        ctx = CycleContext(summary=CycleSummary(run_type="shutdown"))
        try:
            await asyncio.wait_for(
                asyncio.to_thread(self._guarded, self.engine.upload_pass, ctx),
                timeout=timeout_sec,
            )
        except asyncio.TimeoutError:
            logger.warning("shutdown_upload_abandoned timeout_sec=%s", timeout_sec)
            return None
        except Exception as e:
            ctx.summary.finish("failed", str(e))
            logger.error("shutdown_upload_failed error=%s", e)
            return ctx.summary
        ctx.summary.finish("warning" if ctx.summary.errors else "success")
        logger.info("shutdown_upload_completed uploaded=%s", ctx.summary.uploaded)
        return ctx.summary
