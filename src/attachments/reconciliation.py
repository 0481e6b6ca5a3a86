"""Orphaned attachment sweep.

The bucket and the metadata tables are written independently, so they drift:
an upload authorized and used but never confirmed, or a row deleted by a
process that died before deleting its object. This job removes objects no
row references. The reverse drift (a row whose object is gone) is reported
for manual review and never auto-deleted, since rows carry business meaning.

Objects younger than the grace window are left alone so that an upload which
has not been confirmed *yet* is not mistaken for an orphan.
"""

import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone

from src.attachments.repository import AttachmentRepository, get_attachment_repository
from src.config.settings import get_settings
from src.storage.client import AttachmentStorage, get_attachment_storage

logger = logging.getLogger(__name__)


@dataclass
class ReconciliationReport:
    removed_count: int = 0
    removed_keys: list[str] = field(default_factory=list)
    missing_objects: list[str] = field(default_factory=list)
    skipped_recent: int = 0
    scanned_objects: int = 0
    errors: list[dict] = field(default_factory=list)

    def as_dict(self) -> dict:
        return asdict(self)


class _MinIntervalLimiter:
    """Spaces calls at least ``interval`` seconds apart across threads."""

    def __init__(self, interval: float):
        self._interval = interval
        self._next = 0.0
        self._lock = threading.Lock()

    def wait(self) -> None:
        if self._interval <= 0:
            return
        with self._lock:
            now = time.monotonic()
            slot = max(now, self._next)
            self._next = slot + self._interval
        if slot > now:
            time.sleep(slot - now)


class AttachmentReconciler:
    def __init__(
        self,
        storage: AttachmentStorage,
        repo: AttachmentRepository,
        grace: timedelta = timedelta(minutes=10),
        max_workers: int = 4,
        min_delete_interval: float = 0.05,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._storage = storage
        self._repo = repo
        self._grace = grace
        self._max_workers = max(1, max_workers)
        self._min_delete_interval = min_delete_interval
        self._clock = clock

    def reconcile(self) -> ReconciliationReport:
        """Delete unreferenced objects older than the grace window.

        Objects are listed before rows: a row inserted in between can only
        protect more objects, never fewer. If the rows cannot be read the run
        aborts before deleting anything.
        """
        report = ReconciliationReport()

        objects = list(self._storage.list_objects())
        referenced = self._repo.referenced_file_keys(page_interval=self._min_delete_interval)
        report.scanned_objects = len(objects)
        logger.info("Reconciliation: %d object(s) in bucket, %d referenced key(s)", len(objects), len(referenced))

        cutoff = self._clock() - self._grace
        orphans = []
        for obj in objects:
            if obj.key in referenced:
                continue
            if obj.last_modified > cutoff:
                report.skipped_recent += 1
                continue
            orphans.append(obj.key)

        live_keys = {obj.key for obj in objects}
        report.missing_objects = sorted(
            key for key in referenced
            if key.startswith(self._storage.prefix) and key not in live_keys
        )
        for key in report.missing_objects:
            logger.warning("Attachment row references missing object %s; needs manual review", key)

        if orphans:
            self._delete_all(orphans, report)

        report.removed_keys.sort()
        report.removed_count = len(report.removed_keys)
        logger.info(
            "Reconciliation finished: removed=%d skipped_recent=%d missing=%d errors=%d",
            report.removed_count, report.skipped_recent, len(report.missing_objects), len(report.errors),
        )
        return report

    def _delete_all(self, keys: list[str], report: ReconciliationReport) -> None:
        limiter = _MinIntervalLimiter(self._min_delete_interval)
        lock = threading.Lock()

        def delete_one(key: str) -> None:
            limiter.wait()
            try:
                self._storage.delete_object(key)
            except Exception as exc:
                logger.error("Failed to delete orphaned object %s: %s", key, exc)
                with lock:
                    report.errors.append({"file_key": key, "error": str(exc)})
                return
            with lock:
                report.removed_keys.append(key)

        with ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix="reconcile") as pool:
            list(pool.map(delete_one, keys))


def get_reconciler() -> AttachmentReconciler:
    settings = get_settings()
    return AttachmentReconciler(
        get_attachment_storage(),
        get_attachment_repository(),
        grace=timedelta(minutes=settings.RECONCILE_GRACE_MINUTES),
        max_workers=settings.RECONCILE_MAX_WORKERS,
        min_delete_interval=settings.RECONCILE_MIN_DELETE_INTERVAL_MS / 1000,
    )
