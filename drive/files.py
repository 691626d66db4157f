"""Upload, download and delete orchestration across the metadata and object stores.

There is no cross-store transaction. Upload writes the object first and the
metadata row second; delete removes the metadata row first and the object
second. Either way a crash between the two steps leaves an unreferenced object
behind (wasted space, swept by ``drive.reconcile``) and never a metadata row
that points at nothing.
"""

from __future__ import annotations

import hashlib
import logging
import posixpath
import uuid
from typing import BinaryIO, Optional

from .config import DEFAULT_MAX_UPLOAD_BYTES
from .errors import TooLarge
from .metrics import MetricsRecorder, NullMetrics
from .models import File
from .objectstore import ObjectStore, object_locator
from .repositories import BucketRepository, FileObject, FileRepository
from .usage import UsageAccounting

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = "application/octet-stream"
DEFAULT_FILENAME = "upload"


class DigestReader:
    """File-like wrapper that hashes and counts bytes as the store pulls them."""

    def __init__(self, stream: BinaryIO) -> None:
        self._stream = stream
        self._hash = hashlib.sha256()
        self.bytes_read = 0

    def read(self, size: int = -1) -> bytes:
        chunk = self._stream.read(size)
        if chunk:
            self._hash.update(chunk)
            self.bytes_read += len(chunk)
        return chunk

    def hexdigest(self) -> str:
        return self._hash.hexdigest()


def sanitize_filename(name: Optional[str]) -> str:
    name = (name or "").replace("\\", "/").strip()
    name = posixpath.basename(name)
    name = "".join(ch for ch in name if ch.isprintable()).strip()
    if name in {"", ".", ".."}:
        return DEFAULT_FILENAME
    return name


def detect_content_type(content_type: Optional[str]) -> str:
    content_type = (content_type or "").strip()
    return content_type or DEFAULT_CONTENT_TYPE


class FileService:
    def __init__(
        self,
        repo: FileRepository,
        buckets: BucketRepository,
        usage: UsageAccounting,
        store: ObjectStore,
        container: str,
        max_file_size: int = DEFAULT_MAX_UPLOAD_BYTES,
        metrics: MetricsRecorder | None = None,
    ) -> None:
        self._repo = repo
        self._buckets = buckets
        self._usage = usage
        self._store = store
        self._container = container
        self._max_file_size = max_file_size
        self._metrics = metrics or NullMetrics()

    def upload(
        self,
        owner_id: uuid.UUID,
        bucket_id: uuid.UUID,
        stream: BinaryIO,
        declared_size: int,
        filename: Optional[str],
        content_type: Optional[str] = None,
    ) -> File:
        self._buckets.get(owner_id, bucket_id)

        if declared_size > self._max_file_size:
            self._metrics.incr("uploads_rejected_total", reason="declared_size")
            raise TooLarge(
                "file too large", details={"size_bytes": declared_size, "max_bytes": self._max_file_size}
            )

        file_id = uuid.uuid4()
        object_name = object_locator(bucket_id, file_id)
        content_type = detect_content_type(content_type)

        reader = DigestReader(stream)
        stored_size = self._store.put(self._container, object_name, reader, declared_size, content_type)
        if stored_size <= 0:
            stored_size = reader.bytes_read

        if stored_size > self._max_file_size:
            self._metrics.incr("uploads_rejected_total", reason="actual_size")
            self._compensate(object_name, reason="oversized upload")
            raise TooLarge(
                "file too large", details={"size_bytes": stored_size, "max_bytes": self._max_file_size}
            )

        record = File(
            id=file_id,
            bucket_id=bucket_id,
            object_name=object_name,
            original_filename=sanitize_filename(filename),
            size_bytes=stored_size,
            content_type=content_type,
            checksum=reader.hexdigest(),
        )
        try:
            stored = self._repo.create(record)
        except Exception:
            self._compensate(object_name, reason="metadata write failed")
            raise

        self._usage.apply_delta(bucket_id, stored.size_bytes, 1)
        self._usage.snapshot(owner_id)

        self._metrics.incr("uploads_total")
        self._metrics.observe("upload_bytes", stored.size_bytes)
        logger.info(
            "file uploaded id=%s bucket=%s size=%d checksum=%s", stored.id, bucket_id, stored.size_bytes, stored.checksum
        )
        return stored

    def list(self, owner_id: uuid.UUID, bucket_id: uuid.UUID) -> list[File]:
        self._buckets.get(owner_id, bucket_id)
        return self._repo.list(owner_id, bucket_id)

    def download(self, owner_id: uuid.UUID, bucket_id: uuid.UUID, file_id: uuid.UUID) -> tuple[File, BinaryIO]:
        record = self._repo.get(owner_id, bucket_id, file_id)
        body = self._store.get(self._container, record.object_name)
        self._metrics.incr("downloads_total")
        return record, body

    def delete(self, owner_id: uuid.UUID, bucket_id: uuid.UUID, file_id: uuid.UUID) -> File:
        record = self._repo.delete(owner_id, bucket_id, file_id)
        try:
            self._store.remove(self._container, record.object_name)
        except Exception:
            # the row is gone either way; counters follow rows, the object is left for the sweeper
            self._usage.apply_delta(bucket_id, -record.size_bytes, -1)
            self._metrics.incr("delete_object_failures_total")
            logger.warning("file row deleted but object %s could not be removed", record.object_name)
            raise
        self._usage.apply_delta(bucket_id, -record.size_bytes, -1)
        self._usage.snapshot(owner_id)

        self._metrics.incr("deletes_total")
        logger.info("file deleted id=%s bucket=%s size=%d", record.id, bucket_id, record.size_bytes)
        return record

    def objects_for_bucket(self, bucket_id: uuid.UUID) -> list[FileObject]:
        return self._repo.objects_for_bucket(bucket_id)

    def _compensate(self, object_name: str, *, reason: str) -> None:
        # one attempt; the caller reports the primary error, not this one
        try:
            self._store.remove(self._container, object_name)
        except Exception as exc:
            self._metrics.incr("compensation_failures_total")
            logger.warning("could not remove orphan object %s after %s: %s", object_name, reason, exc)
