from __future__ import annotations

import io
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone

import pytest

from drive.buckets import BucketService
from drive.db import build_engine, build_session_factory, create_schema
from drive.errors import NotFound, Unavailable
from drive.files import FileService
from drive.metrics import InMemoryMetrics
from drive.objectstore import ObjectInfo
from drive.presign import PresignService
from drive.repositories import BucketRepository, FileRepository, PresignRepository
from drive.usage import UsageAccounting

CONTAINER = "drive-test"
SCOPE_SECRET = "scope-secret"


@dataclass
class StoredObject:
    data: bytes
    content_type: str
    last_modified: datetime


class MemoryObjectStore:
    """In-memory stand-in for the S3 adapter, with switches for injecting failures."""

    def __init__(self) -> None:
        self.containers: dict[str, dict[str, StoredObject]] = {}
        self.fail_remove: set[str] = set()
        self.fail_all_removes = False
        self.fail_put = False
        self.down = False
        self.removed: list[str] = []
        self.minted: list[tuple[str, str, str, int]] = []

    def _objects(self, container: str) -> dict[str, StoredObject]:
        if container not in self.containers:
            raise NotFound("container not found")
        return self.containers[container]

    def put(self, container, name, stream, size, content_type) -> int:
        if self.fail_put:
            raise Unavailable("object store unavailable")
        data = bytearray()
        while True:
            chunk = stream.read(64 * 1024)
            if not chunk:
                break
            data.extend(chunk)
        self._objects(container)[name] = StoredObject(bytes(data), content_type, datetime.now(timezone.utc))
        return len(data)

    def get(self, container, name):
        obj = self._objects(container).get(name)
        if obj is None:
            raise NotFound("object not found")
        return io.BytesIO(obj.data)

    def remove(self, container, name) -> None:
        if self.fail_all_removes or name in self.fail_remove:
            raise Unavailable("object store unavailable")
        self._objects(container).pop(name, None)
        self.removed.append(name)

    def container_exists(self, container) -> bool:
        return container in self.containers

    def create_container(self, container) -> None:
        self.containers.setdefault(container, {})

    def mint_url(self, container, name, method, ttl_seconds) -> str:
        self.minted.append((container, name, method, ttl_seconds))
        return f"https://store.test/{container}/{name}?method={method}&expires={ttl_seconds}"

    def list_objects(self, container, prefix=""):
        for name, obj in sorted(self._objects(container).items()):
            if name.startswith(prefix):
                yield ObjectInfo(name=name, size=len(obj.data), last_modified=obj.last_modified)

    def ping(self) -> None:
        if self.down:
            raise Unavailable("object store unavailable")

    def names(self, container: str = CONTAINER) -> set[str]:
        return set(self.containers.get(container, {}))


@pytest.fixture()
def engine():
    engine = build_engine("sqlite://")
    create_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture()
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture()
def store() -> MemoryObjectStore:
    store = MemoryObjectStore()
    store.create_container(CONTAINER)
    return store


@pytest.fixture()
def metrics() -> InMemoryMetrics:
    return InMemoryMetrics()


@pytest.fixture()
def usage(db, metrics) -> UsageAccounting:
    return UsageAccounting(db, metrics)


@pytest.fixture()
def file_service(db, usage, store, metrics) -> FileService:
    return FileService(
        FileRepository(db),
        BucketRepository(db),
        usage,
        store,
        CONTAINER,
        max_file_size=1024,
        metrics=metrics,
    )


@pytest.fixture()
def bucket_service(db, usage, file_service, store, metrics) -> BucketService:
    return BucketService(BucketRepository(db), usage, file_service, store, CONTAINER, metrics=metrics)


@pytest.fixture()
def presign_service(db, store, metrics) -> PresignService:
    return PresignService(
        BucketRepository(db),
        FileRepository(db),
        PresignRepository(db),
        store,
        CONTAINER,
        default_ttl_seconds=900,
        max_ttl_seconds=3600,
        token_secret=SCOPE_SECRET,
        metrics=metrics,
    )


@pytest.fixture()
def owner_id() -> uuid.UUID:
    return uuid.uuid4()


def upload_bytes(service: FileService, owner_id, bucket_id, payload: bytes, filename="notes.txt", content_type="text/plain"):
    return service.upload(owner_id, bucket_id, io.BytesIO(payload), len(payload), filename, content_type)
