import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import BinaryIO, Iterator, Protocol

import boto3
from boto3.exceptions import S3UploadFailedError
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from .config import Settings
from .errors import InvalidMethod, NotFound, Unavailable

logger = logging.getLogger(__name__)

_MISSING_CODES = {"404", "NoSuchKey", "NoSuchBucket", "NotFound"}

PRESIGN_CLIENT_METHODS = {
    "GET": "get_object",
    "PUT": "put_object",
}


@dataclass(frozen=True)
class ObjectInfo:
    name: str
    size: int
    last_modified: datetime


class ObjectStore(Protocol):
    """Capabilities the orchestration core needs from an S3-compatible store.

    Everything is addressed by (container, name); names are flat keys, not paths.
    """

    def put(self, container: str, name: str, stream: BinaryIO, size: int, content_type: str) -> int:
        ...

    def get(self, container: str, name: str) -> BinaryIO:
        ...

    def remove(self, container: str, name: str) -> None:
        ...

    def container_exists(self, container: str) -> bool:
        ...

    def create_container(self, container: str) -> None:
        ...

    def mint_url(self, container: str, name: str, method: str, ttl_seconds: int) -> str:
        ...

    def list_objects(self, container: str, prefix: str = "") -> Iterator[ObjectInfo]:
        ...

    def ping(self) -> None:
        ...


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


def _status(exc: ClientError) -> int:
    return int(exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0) or 0)


def _unavailable(action: str, exc: Exception) -> Unavailable:
    return Unavailable("object store unavailable", details={"action": action, "error": type(exc).__name__})


class S3ObjectStore:
    def __init__(self, client) -> None:
        self._client = client

    @classmethod
    def from_settings(cls, settings: Settings) -> "S3ObjectStore":
        client = boto3.client(
            "s3",
            endpoint_url=settings.minio_endpoint,
            aws_access_key_id=settings.minio_access_key,
            aws_secret_access_key=settings.minio_secret_key,
            region_name=settings.minio_region,
            config=Config(
                signature_version="s3v4",
                s3={"addressing_style": "path"},
                connect_timeout=settings.store_timeout_seconds,
                read_timeout=settings.store_timeout_seconds,
                retries={"total_max_attempts": 1},
            ),
        )
        return cls(client)

    def put(self, container: str, name: str, stream: BinaryIO, size: int, content_type: str) -> int:
        try:
            self._client.upload_fileobj(stream, container, name, ExtraArgs={"ContentType": content_type})
            head = self._client.head_object(Bucket=container, Key=name)
        except ClientError as exc:
            raise self._translate("put", exc) from exc
        except (BotoCoreError, S3UploadFailedError) as exc:
            raise _unavailable("put", exc) from exc
        return int(head.get("ContentLength", size))

    def get(self, container: str, name: str) -> BinaryIO:
        try:
            resp = self._client.get_object(Bucket=container, Key=name)
        except ClientError as exc:
            if _error_code(exc) in _MISSING_CODES:
                raise NotFound("object not found", details={"object_name": name}) from exc
            raise self._translate("get", exc) from exc
        except BotoCoreError as exc:
            raise _unavailable("get", exc) from exc
        return resp["Body"]

    def remove(self, container: str, name: str) -> None:
        try:
            self._client.delete_object(Bucket=container, Key=name)
        except ClientError as exc:
            if _error_code(exc) in _MISSING_CODES:
                logger.debug("object %s already absent from %s", name, container)
                return
            raise self._translate("remove", exc) from exc
        except BotoCoreError as exc:
            raise _unavailable("remove", exc) from exc

    def container_exists(self, container: str) -> bool:
        try:
            self._client.head_bucket(Bucket=container)
        except ClientError as exc:
            if _error_code(exc) in _MISSING_CODES:
                return False
            raise self._translate("container_exists", exc) from exc
        except BotoCoreError as exc:
            raise _unavailable("container_exists", exc) from exc
        return True

    def create_container(self, container: str) -> None:
        params = {"Bucket": container}
        region = self._client.meta.region_name
        if region and region != "us-east-1":
            params["CreateBucketConfiguration"] = {"LocationConstraint": region}
        try:
            self._client.create_bucket(**params)
        except ClientError as exc:
            if _error_code(exc) in {"BucketAlreadyOwnedByYou", "BucketAlreadyExists"}:
                return
            raise self._translate("create_container", exc) from exc
        except BotoCoreError as exc:
            raise _unavailable("create_container", exc) from exc

    def mint_url(self, container: str, name: str, method: str, ttl_seconds: int) -> str:
        client_method = PRESIGN_CLIENT_METHODS.get(method.upper())
        if client_method is None:
            raise InvalidMethod(f"unsupported presign method {method!r}")
        try:
            return self._client.generate_presigned_url(
                ClientMethod=client_method,
                Params={"Bucket": container, "Key": name},
                ExpiresIn=ttl_seconds,
            )
        except BotoCoreError as exc:
            raise _unavailable("mint_url", exc) from exc

    def list_objects(self, container: str, prefix: str = "") -> Iterator[ObjectInfo]:
        paginator = self._client.get_paginator("list_objects_v2")
        try:
            for page in paginator.paginate(Bucket=container, Prefix=prefix):
                for item in page.get("Contents", []):
                    yield ObjectInfo(name=item["Key"], size=int(item["Size"]), last_modified=item["LastModified"])
        except ClientError as exc:
            raise self._translate("list_objects", exc) from exc
        except BotoCoreError as exc:
            raise _unavailable("list_objects", exc) from exc

    def ping(self) -> None:
        try:
            self._client.list_buckets()
        except (ClientError, BotoCoreError) as exc:
            raise _unavailable("ping", exc) from exc

    @staticmethod
    def _translate(action: str, exc: ClientError) -> Exception:
        if _status(exc) >= 500 or _status(exc) == 0:
            return _unavailable(action, exc)
        return exc


def wait_for_store(store: ObjectStore, max_attempts: int = 30, sleep_s: float = 1.0) -> None:
    last_exc = None
    for attempt in range(1, max_attempts + 1):
        try:
            store.ping()
            return
        except Unavailable as exc:
            last_exc = exc.__cause__ or exc
            logger.info("object store not ready (attempt %d/%d): %s", attempt, max_attempts, last_exc)
            time.sleep(sleep_s)
    raise RuntimeError(f"Object store not ready after {max_attempts} attempts: {last_exc}")


def ensure_container(store: ObjectStore, container: str) -> None:
    if not store.container_exists(container):
        logger.info("creating object store container %s", container)
        store.create_container(container)


def object_locator(bucket_id, file_id) -> str:
    # every logical bucket shares ONE store container, namespaced by bucket id
    return f"{bucket_id}/{file_id}"
