import logging
import uuid
from typing import Optional, Protocol

from .errors import InvalidInput
from .metrics import MetricsRecorder, NullMetrics
from .models import Bucket
from .objectstore import ObjectStore
from .repositories import BucketRepository, FileObject
from .usage import UsageAccounting

logger = logging.getLogger(__name__)


class FileIndex(Protocol):
    def objects_for_bucket(self, bucket_id: uuid.UUID) -> list[FileObject]:
        ...


class BucketService:
    def __init__(
        self,
        repo: BucketRepository,
        usage: UsageAccounting,
        files: FileIndex,
        store: ObjectStore,
        container: str,
        metrics: MetricsRecorder | None = None,
    ) -> None:
        self._repo = repo
        self._usage = usage
        self._files = files
        self._store = store
        self._container = container
        self._metrics = metrics or NullMetrics()

    def create(self, owner_id: uuid.UUID, name: str, description: Optional[str] = None) -> Bucket:
        name = (name or "").strip()
        if not name:
            raise InvalidInput("bucket name required", details={"field": "name"})
        bucket = self._repo.create(owner_id, name, description)
        self._metrics.incr("buckets_created_total")
        logger.info("bucket created id=%s owner=%s name=%s", bucket.id, owner_id, name)
        return bucket

    def list(self, owner_id: uuid.UUID) -> list[Bucket]:
        return self._repo.list(owner_id)

    def get(self, owner_id: uuid.UUID, bucket_id: uuid.UUID) -> Bucket:
        return self._repo.get(owner_id, bucket_id)

    def delete(self, owner_id: uuid.UUID, bucket_id: uuid.UUID) -> None:
        """Remove every stored object, then the bucket row, then snapshot usage.

        A failed object removal stops here with metadata intact, so the call
        can simply be retried: objects already gone are not an error.
        """
        self._repo.get(owner_id, bucket_id)

        objects = self._files.objects_for_bucket(bucket_id)
        for obj in objects:
            try:
                self._store.remove(self._container, obj.object_name)
            except Exception:
                self._metrics.incr("bucket_delete_failures_total", stage="object")
                logger.warning("bucket delete aborted id=%s: removing %s failed", bucket_id, obj.object_name)
                raise

        self._repo.delete(owner_id, bucket_id)
        self._usage.snapshot(owner_id)
        self._metrics.incr("buckets_deleted_total")
        logger.info("bucket deleted id=%s owner=%s objects=%d", bucket_id, owner_id, len(objects))
