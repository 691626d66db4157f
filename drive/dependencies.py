from typing import Iterator

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from .buckets import BucketService
from .config import Settings
from .db import session_scope
from .files import FileService
from .metrics import MetricsRecorder
from .objectstore import ObjectStore
from .presign import PresignService
from .reconcile import OrphanSweeper
from .repositories import BucketRepository, FileRepository, PresignRepository
from .usage import UsageAccounting


def get_settings_dep(request: Request) -> Settings:
    return request.app.state.settings


def get_db(request: Request) -> Iterator[Session]:
    yield from session_scope(request.app.state.session_factory)


def get_store(request: Request) -> ObjectStore:
    return request.app.state.object_store


def get_metrics(request: Request) -> MetricsRecorder:
    return request.app.state.metrics


def get_usage(db: Session = Depends(get_db), metrics: MetricsRecorder = Depends(get_metrics)) -> UsageAccounting:
    return UsageAccounting(db, metrics)


def get_file_service(
    db: Session = Depends(get_db),
    usage: UsageAccounting = Depends(get_usage),
    store: ObjectStore = Depends(get_store),
    settings: Settings = Depends(get_settings_dep),
    metrics: MetricsRecorder = Depends(get_metrics),
) -> FileService:
    return FileService(
        FileRepository(db),
        BucketRepository(db),
        usage,
        store,
        settings.minio_bucket,
        max_file_size=settings.max_upload_bytes,
        metrics=metrics,
    )


def get_bucket_service(
    db: Session = Depends(get_db),
    usage: UsageAccounting = Depends(get_usage),
    files: FileService = Depends(get_file_service),
    store: ObjectStore = Depends(get_store),
    settings: Settings = Depends(get_settings_dep),
    metrics: MetricsRecorder = Depends(get_metrics),
) -> BucketService:
    return BucketService(BucketRepository(db), usage, files, store, settings.minio_bucket, metrics=metrics)


def get_presign_service(
    db: Session = Depends(get_db),
    store: ObjectStore = Depends(get_store),
    settings: Settings = Depends(get_settings_dep),
    metrics: MetricsRecorder = Depends(get_metrics),
) -> PresignService:
    return PresignService(
        BucketRepository(db),
        FileRepository(db),
        PresignRepository(db),
        store,
        settings.minio_bucket,
        default_ttl_seconds=settings.presign_ttl_seconds,
        max_ttl_seconds=settings.presign_max_ttl_seconds,
        token_secret=settings.scope_token_secret,
        metrics=metrics,
    )


def get_sweeper(
    db: Session = Depends(get_db),
    store: ObjectStore = Depends(get_store),
    settings: Settings = Depends(get_settings_dep),
    metrics: MetricsRecorder = Depends(get_metrics),
) -> OrphanSweeper:
    return OrphanSweeper(
        FileRepository(db),
        store,
        settings.minio_bucket,
        grace_seconds=settings.reconcile_grace_seconds,
        metrics=metrics,
    )
