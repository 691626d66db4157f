from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterable, Iterator, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.orm import Session

from .errors import NameConflict, Unavailable, bucket_not_found, file_not_found
from .models import Bucket, BucketUsage, File, PresignedAudit, PresignedRecord

logger = logging.getLogger(__name__)

FOREIGN_KEY_VIOLATION = "23503"


def is_foreign_key_violation(exc: IntegrityError) -> bool:
    # postgres reports a SQLSTATE, sqlite only a message
    if getattr(exc.orig, "pgcode", None) == FOREIGN_KEY_VIOLATION:
        return True
    return "foreign key" in str(exc.orig).lower()


@contextmanager
def transaction(db: Session, action: str) -> Iterator[Session]:
    """Commit on success, roll back on any failure.

    Connectivity and timeout failures surface as ``Unavailable``; everything
    else propagates unchanged.
    """
    try:
        yield db
        db.commit()
    except (OperationalError, InterfaceError) as exc:
        db.rollback()
        logger.error("metadata store failure during %s: %s", action, exc)
        raise Unavailable("metadata store unavailable", details={"action": action}) from exc
    except Exception:
        db.rollback()
        raise


@dataclass(frozen=True)
class FileObject:
    object_name: str
    size_bytes: int


class BucketRepository:
    def __init__(self, db: Session) -> None:
        self._db = db

    def create(self, owner_id: uuid.UUID, name: str, description: Optional[str]) -> Bucket:
        bucket = Bucket(owner_id=owner_id, name=name.strip(), description=description)
        bucket.usage = BucketUsage(total_bytes=0, file_count=0)
        try:
            with transaction(self._db, "create bucket"):
                self._db.add(bucket)
        except IntegrityError as exc:
            raise NameConflict("bucket name already exists", details={"name": bucket.name}) from exc
        return bucket

    def list(self, owner_id: uuid.UUID) -> list[Bucket]:
        stmt = (
            select(Bucket)
            .where(Bucket.owner_id == owner_id)
            .order_by(Bucket.created_at.desc())
            .execution_options(populate_existing=True)
        )
        with transaction(self._db, "list buckets"):
            return list(self._db.scalars(stmt).unique().all())

    def get(self, owner_id: uuid.UUID, bucket_id: uuid.UUID) -> Bucket:
        stmt = (
            select(Bucket)
            .where(Bucket.id == bucket_id, Bucket.owner_id == owner_id)
            .execution_options(populate_existing=True)
        )
        with transaction(self._db, "get bucket"):
            bucket = self._db.scalars(stmt).unique().one_or_none()
        if bucket is None:
            raise bucket_not_found(bucket_id)
        return bucket

    def get_by_id(self, bucket_id: uuid.UUID) -> Bucket:
        stmt = select(Bucket).where(Bucket.id == bucket_id).execution_options(populate_existing=True)
        with transaction(self._db, "get bucket by id"):
            bucket = self._db.scalars(stmt).unique().one_or_none()
        if bucket is None:
            raise bucket_not_found(bucket_id)
        return bucket

    def delete(self, owner_id: uuid.UUID, bucket_id: uuid.UUID) -> None:
        # files and bucket_usage rows go with it through ON DELETE CASCADE
        stmt = delete(Bucket).where(Bucket.id == bucket_id, Bucket.owner_id == owner_id)
        with transaction(self._db, "delete bucket"):
            result = self._db.execute(stmt, execution_options={"synchronize_session": False})
        if result.rowcount == 0:
            raise bucket_not_found(bucket_id)
        self._db.expunge_all()


class FileRepository:
    def __init__(self, db: Session) -> None:
        self._db = db

    def create(self, record: File) -> File:
        try:
            with transaction(self._db, "create file metadata"):
                self._db.add(record)
        except IntegrityError as exc:
            if is_foreign_key_violation(exc):
                # bucket deleted after the ownership check
                raise bucket_not_found(record.bucket_id) from exc
            raise NameConflict(
                "object name already exists in bucket", details={"object_name": record.object_name}
            ) from exc
        return record

    def list(self, owner_id: uuid.UUID, bucket_id: uuid.UUID) -> list[File]:
        stmt = (
            select(File)
            .join(Bucket, Bucket.id == File.bucket_id)
            .where(File.bucket_id == bucket_id, Bucket.owner_id == owner_id)
            .order_by(File.created_at.desc())
        )
        with transaction(self._db, "list files"):
            return list(self._db.scalars(stmt).all())

    def _owned(self, owner_id: uuid.UUID, bucket_id: uuid.UUID, file_id: uuid.UUID):
        return (
            select(File)
            .join(Bucket, Bucket.id == File.bucket_id)
            .where(File.id == file_id, File.bucket_id == bucket_id, Bucket.owner_id == owner_id)
        )

    def get(self, owner_id: uuid.UUID, bucket_id: uuid.UUID, file_id: uuid.UUID) -> File:
        with transaction(self._db, "get file metadata"):
            record = self._db.scalars(self._owned(owner_id, bucket_id, file_id)).one_or_none()
        if record is None:
            raise file_not_found(file_id)
        return record

    def get_by_id(self, file_id: uuid.UUID) -> File:
        with transaction(self._db, "get file by id"):
            record = self._db.get(File, file_id)
        if record is None:
            raise file_not_found(file_id)
        return record

    def delete(self, owner_id: uuid.UUID, bucket_id: uuid.UUID, file_id: uuid.UUID) -> File:
        """Remove a file row and hand back what was removed."""
        with transaction(self._db, "delete file metadata"):
            record = self._db.scalars(self._owned(owner_id, bucket_id, file_id).with_for_update()).one_or_none()
            if record is None:
                raise file_not_found(file_id)
            self._db.delete(record)
        return record

    def objects_for_bucket(self, bucket_id: uuid.UUID) -> list[FileObject]:
        stmt = select(File.object_name, File.size_bytes).where(File.bucket_id == bucket_id)
        with transaction(self._db, "list bucket objects"):
            rows = self._db.execute(stmt).all()
        return [FileObject(object_name=name, size_bytes=size) for name, size in rows]

    def known_object_names(self, names: Iterable[str]) -> set[str]:
        wanted = list(names)
        if not wanted:
            return set()
        stmt = select(File.object_name).where(File.object_name.in_(wanted))
        with transaction(self._db, "match object names"):
            return set(self._db.scalars(stmt).all())


class PresignRepository:
    def __init__(self, db: Session) -> None:
        self._db = db

    def save(self, record: PresignedRecord, audit: PresignedAudit) -> None:
        # one transaction: no URL without its audit row
        with transaction(self._db, "save presigned issuance"):
            self._db.add(record)
            self._db.add(audit)
