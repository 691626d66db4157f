"""Sweep the object store for objects no file row refers to.

Orphans come from a crash between the object write and the metadata write on
upload, or from a failed object removal after the metadata row was deleted.
Only names shaped like ``<bucket uuid>/<file uuid>`` are considered, and only
once they are older than the grace period, so an upload still in flight is
never mistaken for an orphan.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable

from .metrics import MetricsRecorder, NullMetrics
from .objectstore import ObjectInfo, ObjectStore
from .repositories import FileRepository

logger = logging.getLogger(__name__)

BATCH_SIZE = 500


def is_managed_name(name: str) -> bool:
    parts = name.split("/")
    if len(parts) != 2:
        return False
    try:
        uuid.UUID(parts[0])
        uuid.UUID(parts[1])
    except ValueError:
        return False
    return True


@dataclass
class SweepReport:
    scanned: int = 0
    orphans: list[str] = field(default_factory=list)
    removed: int = 0
    failed: int = 0


class OrphanSweeper:
    def __init__(
        self,
        files: FileRepository,
        store: ObjectStore,
        container: str,
        grace_seconds: int = 3600,
        metrics: MetricsRecorder | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._files = files
        self._store = store
        self._container = container
        self._grace = timedelta(seconds=grace_seconds)
        self._metrics = metrics or NullMetrics()
        self._clock = clock

    def sweep(self, dry_run: bool = False) -> SweepReport:
        report = SweepReport()
        cutoff = self._clock() - self._grace
        batch: list[ObjectInfo] = []

        for info in self._store.list_objects(self._container):
            report.scanned += 1
            if not is_managed_name(info.name) or info.last_modified > cutoff:
                continue
            batch.append(info)
            if len(batch) >= BATCH_SIZE:
                self._process(batch, report, dry_run)
                batch = []
        if batch:
            self._process(batch, report, dry_run)

        logger.info(
            "reconcile sweep scanned=%d orphans=%d removed=%d failed=%d dry_run=%s",
            report.scanned,
            len(report.orphans),
            report.removed,
            report.failed,
            dry_run,
        )
        return report

    def _process(self, batch: list[ObjectInfo], report: SweepReport, dry_run: bool) -> None:
        known = self._files.known_object_names(info.name for info in batch)
        for info in batch:
            if info.name in known:
                continue
            report.orphans.append(info.name)
            if dry_run:
                continue
            try:
                self._store.remove(self._container, info.name)
            except Exception as exc:
                report.failed += 1
                self._metrics.incr("reconcile_failures_total")
                logger.warning("could not remove orphan %s: %s", info.name, exc)
                continue
            report.removed += 1
            self._metrics.incr("reconcile_removed_total")
            logger.info("removed orphan object %s (%d bytes)", info.name, info.size)
