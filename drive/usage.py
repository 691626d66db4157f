"""Per-bucket usage counters and per-owner usage snapshots.

Counters are moved only by signed deltas through a single upsert statement, so
concurrent writers to the same bucket each land their own contribution. Values
are clamped at zero on both the insert and the update path; a delete applied
before its matching upload delta can never drive a counter negative.

Snapshots are append-only history. No read path consults them: live usage is
read from ``bucket_usage`` directly.
"""

import logging
import uuid

from sqlalchemy import case, func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .errors import bucket_not_found
from .metrics import MetricsRecorder, NullMetrics
from .models import Bucket, BucketUsage, UsageSnapshot, UsageStats, _utcnow
from .repositories import is_foreign_key_violation, transaction

logger = logging.getLogger(__name__)

_DIALECT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def _floored(expr):
    return case((expr < 0, 0), else_=expr)


class UsageAccounting:
    def __init__(self, db: Session, metrics: MetricsRecorder | None = None) -> None:
        self._db = db
        self._metrics = metrics or NullMetrics()

    def apply_delta(self, bucket_id: uuid.UUID, delta_bytes: int, delta_files: int) -> None:
        dialect = self._db.get_bind().dialect.name
        insert = _DIALECT_INSERTS.get(dialect)
        if insert is None:
            raise NotImplementedError(f"usage upsert not supported on {dialect}")

        stmt = insert(BucketUsage).values(
            bucket_id=bucket_id,
            total_bytes=max(delta_bytes, 0),
            file_count=max(delta_files, 0),
            updated_at=_utcnow(),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[BucketUsage.bucket_id],
            set_={
                "total_bytes": _floored(BucketUsage.total_bytes + delta_bytes),
                "file_count": _floored(BucketUsage.file_count + delta_files),
                "updated_at": stmt.excluded.updated_at,
            },
        )
        try:
            with transaction(self._db, "apply usage delta"):
                self._db.execute(stmt)
        except IntegrityError as exc:
            if is_foreign_key_violation(exc):
                raise bucket_not_found(bucket_id) from exc
            raise
        self._metrics.incr("usage_deltas_total", direction="up" if delta_files >= 0 else "down")
        logger.debug("usage delta bucket=%s bytes=%+d files=%+d", bucket_id, delta_bytes, delta_files)

    def stats(self, bucket_id: uuid.UUID) -> UsageStats:
        stmt = select(BucketUsage.total_bytes, BucketUsage.file_count).where(BucketUsage.bucket_id == bucket_id)
        with transaction(self._db, "read usage"):
            row = self._db.execute(stmt).one_or_none()
        if row is None:
            return UsageStats()
        return UsageStats(total_bytes=row.total_bytes, file_count=row.file_count)

    def snapshot(self, owner_id: uuid.UUID) -> UsageSnapshot:
        totals = (
            select(
                func.coalesce(func.sum(BucketUsage.total_bytes), 0),
                func.coalesce(func.sum(BucketUsage.file_count), 0),
            )
            .select_from(Bucket)
            .outerjoin(BucketUsage, BucketUsage.bucket_id == Bucket.id)
            .where(Bucket.owner_id == owner_id)
        )
        with transaction(self._db, "record usage snapshot"):
            total_bytes, file_count = self._db.execute(totals).one()
            snapshot = UsageSnapshot(owner_id=owner_id, total_bytes=int(total_bytes), file_count=int(file_count))
            self._db.add(snapshot)
        self._metrics.incr("usage_snapshots_total")
        return snapshot

    def history(self, owner_id: uuid.UUID, limit: int = 50) -> list[UsageSnapshot]:
        stmt = (
            select(UsageSnapshot)
            .where(UsageSnapshot.owner_id == owner_id)
            .order_by(UsageSnapshot.collected_at.desc(), UsageSnapshot.id.desc())
            .limit(limit)
        )
        with transaction(self._db, "list usage snapshots"):
            return list(self._db.scalars(stmt).all())
