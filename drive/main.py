import logging
import os
import uuid
from contextlib import asynccontextmanager
from typing import BinaryIO, Iterator, Optional
from urllib.parse import quote

from fastapi import Depends, FastAPI, File, Header, Request, UploadFile, status
from fastapi.responses import JSONResponse, Response, StreamingResponse

from .auth import Principal, current_principal, require_admin
from .buckets import BucketService
from .config import Settings, configure_logging, get_settings
from .db import build_engine, build_session_factory, create_schema, ping_db, wait_for_db
from .dependencies import get_bucket_service, get_file_service, get_presign_service, get_sweeper, get_usage
from .errors import DriveError, Unavailable
from .files import FileService
from .metrics import MetricsRecorder, NullMetrics
from .objectstore import ObjectStore, S3ObjectStore, ensure_container, wait_for_store
from .presign import PresignService
from .reconcile import OrphanSweeper
from .schemas import (
    BucketCreate,
    BucketList,
    BucketOut,
    FileList,
    FileOut,
    PresignOut,
    PresignRequest,
    ScopeTokenOut,
    ScopeTokenRequest,
    SnapshotList,
    SweepOut,
)
from .usage import UsageAccounting

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024


@asynccontextmanager
async def lifespan(app: FastAPI):
    state = app.state
    if state.settings is None:
        state.settings = get_settings()
    configure_logging(state.settings.log_level)

    owned_engine = None
    if state.session_factory is None:
        owned_engine = build_engine(state.settings.database_url, timeout_seconds=state.settings.store_timeout_seconds)
        wait_for_db(owned_engine)
        create_schema(owned_engine)
        state.engine = owned_engine
        state.session_factory = build_session_factory(owned_engine)

    if state.object_store is None:
        state.object_store = S3ObjectStore.from_settings(state.settings)
        wait_for_store(state.object_store)
    ensure_container(state.object_store, state.settings.minio_bucket)

    logger.info("drive api ready (container=%s)", state.settings.minio_bucket)
    yield

    if owned_engine is not None:
        owned_engine.dispose()


def _error_body(exc: DriveError) -> dict:
    if isinstance(exc, Unavailable):
        return {"message": "service temporarily unavailable", "code": exc.code.value, "details": None}
    return {"message": exc.message, "code": exc.code.value, "details": exc.details}


def _iter_chunks(body: BinaryIO) -> Iterator[bytes]:
    try:
        while True:
            chunk = body.read(CHUNK_SIZE)
            if not chunk:
                break
            yield chunk
    finally:
        body.close()


def _declared_size(upload: UploadFile) -> int:
    if upload.size is not None:
        return upload.size
    upload.file.seek(0, os.SEEK_END)
    size = upload.file.tell()
    upload.file.seek(0)
    return size


def create_app(
    settings: Optional[Settings] = None,
    *,
    session_factory=None,
    engine=None,
    object_store: Optional[ObjectStore] = None,
    metrics: Optional[MetricsRecorder] = None,
) -> FastAPI:
    app = FastAPI(title="drive", lifespan=lifespan)
    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.engine = engine
    app.state.object_store = object_store
    app.state.metrics = metrics or NullMetrics()

    @app.exception_handler(DriveError)
    async def drive_error_handler(request: Request, exc: DriveError):
        if isinstance(exc, Unavailable):
            logger.error("%s %s failed: %s %s", request.method, request.url.path, exc.message, exc.details)
        return JSONResponse(status_code=exc.status_code, content=_error_body(exc))

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception("unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500, content={"message": "internal error", "code": "INTERNAL_ERROR", "details": None}
        )

    @app.get("/health")
    @app.get("/health/live")
    def health():
        return {"status": "ok"}

    @app.get("/health/ready")
    def ready(request: Request):
        state = request.app.state
        try:
            if state.engine is not None:
                ping_db(state.engine)
        except Exception as exc:
            logger.warning("readiness: database check failed: %s", exc)
            return JSONResponse(status_code=503, content={"status": "degraded", "component": "database"})
        try:
            state.object_store.ping()
        except Exception as exc:
            logger.warning("readiness: object store check failed: %s", exc)
            return JSONResponse(status_code=503, content={"status": "degraded", "component": "object_store"})
        return {"status": "ok"}

    @app.post("/buckets", response_model=BucketOut, status_code=status.HTTP_201_CREATED)
    def create_bucket(
        payload: BucketCreate,
        principal: Principal = Depends(current_principal),
        buckets: BucketService = Depends(get_bucket_service),
    ):
        return buckets.create(principal.user_id, payload.name, payload.description)

    @app.get("/buckets", response_model=BucketList)
    def list_buckets(
        principal: Principal = Depends(current_principal),
        buckets: BucketService = Depends(get_bucket_service),
    ):
        return {"buckets": buckets.list(principal.user_id)}

    @app.get("/buckets/{bucket_id}", response_model=BucketOut)
    def get_bucket(
        bucket_id: uuid.UUID,
        principal: Principal = Depends(current_principal),
        buckets: BucketService = Depends(get_bucket_service),
    ):
        return buckets.get(principal.user_id, bucket_id)

    @app.delete("/buckets/{bucket_id}", status_code=204)
    def delete_bucket(
        bucket_id: uuid.UUID,
        principal: Principal = Depends(current_principal),
        buckets: BucketService = Depends(get_bucket_service),
    ):
        buckets.delete(principal.user_id, bucket_id)
        return Response(status_code=204)

    @app.post("/buckets/{bucket_id}/files", response_model=FileOut, status_code=status.HTTP_201_CREATED)
    def upload_file(
        bucket_id: uuid.UUID,
        file: UploadFile = File(...),
        principal: Principal = Depends(current_principal),
        files: FileService = Depends(get_file_service),
    ):
        return files.upload(
            principal.user_id,
            bucket_id,
            file.file,
            _declared_size(file),
            file.filename,
            file.content_type,
        )

    @app.get("/buckets/{bucket_id}/files", response_model=FileList)
    def list_files(
        bucket_id: uuid.UUID,
        principal: Principal = Depends(current_principal),
        files: FileService = Depends(get_file_service),
    ):
        return {"files": files.list(principal.user_id, bucket_id)}

    @app.get("/buckets/{bucket_id}/files/{file_id}")
    def download_file(
        bucket_id: uuid.UUID,
        file_id: uuid.UUID,
        principal: Principal = Depends(current_principal),
        files: FileService = Depends(get_file_service),
    ):
        record, body = files.download(principal.user_id, bucket_id, file_id)
        headers = {
            "Content-Length": str(record.size_bytes),
            "ETag": record.checksum,
            "X-Checksum-Sha256": record.checksum,
            "Content-Disposition": f"attachment; filename*=UTF-8''{quote(record.original_filename)}",
        }
        return StreamingResponse(_iter_chunks(body), media_type=record.content_type, headers=headers)

    @app.delete("/buckets/{bucket_id}/files/{file_id}", status_code=204)
    def delete_file(
        bucket_id: uuid.UUID,
        file_id: uuid.UUID,
        principal: Principal = Depends(current_principal),
        files: FileService = Depends(get_file_service),
    ):
        files.delete(principal.user_id, bucket_id, file_id)
        return Response(status_code=204)

    @app.post("/buckets/{bucket_id}/files/{file_id}/presigned-url", response_model=PresignOut)
    def presign_file(
        bucket_id: uuid.UUID,
        file_id: uuid.UUID,
        payload: PresignRequest,
        x_scope_token: Optional[str] = Header(default=None),
        principal: Principal = Depends(current_principal),
        presign: PresignService = Depends(get_presign_service),
    ):
        scope = presign.decode_scope_token(x_scope_token) if x_scope_token else None
        issued = presign.generate_url(
            principal.user_id, bucket_id, file_id, payload.method, payload.ttl_seconds, scope=scope
        )
        return PresignOut(url=issued.url, method=issued.method, expires_at=issued.expires_at)

    @app.post("/buckets/{bucket_id}/files/{file_id}/scope-tokens", response_model=ScopeTokenOut)
    def issue_scope_token(
        bucket_id: uuid.UUID,
        file_id: uuid.UUID,
        payload: ScopeTokenRequest,
        principal: Principal = Depends(current_principal),
        presign: PresignService = Depends(get_presign_service),
    ):
        raw, token = presign.issue_scope_token(
            principal.user_id,
            bucket_id,
            file_id,
            can_read=payload.can_read,
            can_write=payload.can_write,
            ttl_seconds=payload.ttl_seconds,
            grantee_id=payload.grantee_id,
        )
        return ScopeTokenOut(
            token=raw,
            user_id=token.user_id,
            can_read=token.can_read,
            can_write=token.can_write,
            expires_at=token.expires_at,
        )

    @app.get("/usage/snapshots", response_model=SnapshotList)
    def usage_snapshots(
        limit: int = 50,
        principal: Principal = Depends(current_principal),
        usage: UsageAccounting = Depends(get_usage),
    ):
        return {"snapshots": usage.history(principal.user_id, limit=max(1, min(limit, 500)))}

    @app.post("/admin/reconcile", response_model=SweepOut)
    def reconcile(
        dry_run: bool = True,
        _: Principal = Depends(require_admin),
        sweeper: OrphanSweeper = Depends(get_sweeper),
    ):
        report = sweeper.sweep(dry_run=dry_run)
        return SweepOut(
            scanned=report.scanned,
            orphans=report.orphans,
            removed=report.removed,
            failed=report.failed,
            dry_run=dry_run,
        )

    return app


app = create_app()
