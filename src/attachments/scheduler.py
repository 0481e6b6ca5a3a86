"""Background task that runs the attachment reconciliation on an interval.

Runs as an ``asyncio`` task started from the application lifespan. The sweep
itself is blocking (boto3, Supabase), so each run is pushed to a worker
thread and the event loop keeps serving requests.
"""

import asyncio
import logging
from collections.abc import Callable

from src.attachments.reconciliation import AttachmentReconciler

logger = logging.getLogger(__name__)


class ReconciliationScheduler:
    """Periodic driver for :class:`AttachmentReconciler`.

    Parameters
    ----------
    reconciler_factory:
        Builds the reconciler for each run, so configuration and clients are
        resolved lazily.
    interval_seconds:
        Delay between the end of one run and the start of the next.
    """

    def __init__(self, reconciler_factory: Callable[[], AttachmentReconciler], interval_seconds: float):
        self._factory = reconciler_factory
        self._interval = interval_seconds
        self._running = False
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            logger.warning("ReconciliationScheduler already running; ignoring start()")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("ReconciliationScheduler started (every %ss)", self._interval)

    async def stop(self) -> None:
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("ReconciliationScheduler stopped")

    async def run_once(self) -> None:
        try:
            report = await asyncio.to_thread(lambda: self._factory().reconcile())
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Scheduled attachment reconciliation failed")
            return
        if report.errors:
            logger.warning("Scheduled reconciliation left %d object(s) undeleted", len(report.errors))

    async def _run_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self._interval)
            await self.run_once()
