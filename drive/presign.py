import base64
import binascii
import hashlib
import hmac
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from .errors import AccessDenied, InvalidInput, InvalidMethod, MismatchedResource
from .metrics import MetricsRecorder, NullMetrics
from .models import PresignedAudit, PresignedRecord
from .objectstore import ObjectStore
from .repositories import BucketRepository, FileRepository, PresignRepository

logger = logging.getLogger(__name__)

ALLOWED_METHODS = ("GET", "PUT")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _sign(secret: str, payload: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


@dataclass(frozen=True)
class ScopeToken:
    """Capability restricting presigning to one object and a read/write grant."""

    user_id: str
    bucket: str
    object: str
    can_read: bool
    can_write: bool
    expires_at: datetime

    def allows(self, *, user_id: str, bucket: str, object_name: str, write: bool, now: datetime) -> bool:
        if now >= self.expires_at:
            return False
        if self.user_id != user_id:
            return False
        if self.bucket != bucket or self.object != object_name:
            return False
        if write:
            return self.can_write
        return self.can_read

    def encode(self, secret: str) -> str:
        body = json.dumps(
            {
                "sub": self.user_id,
                "bucket": self.bucket,
                "object": self.object,
                "read": self.can_read,
                "write": self.can_write,
                "exp": int(self.expires_at.timestamp()),
            },
            separators=(",", ":"),
            sort_keys=True,
        ).encode("utf-8")
        encoded = base64.urlsafe_b64encode(body).rstrip(b"=")
        return f"{encoded.decode('ascii')}.{_sign(secret, encoded)}"

    @classmethod
    def decode(cls, raw: str, secret: str) -> "ScopeToken":
        try:
            encoded, sig = raw.strip().rsplit(".", 1)
        except ValueError:
            raise AccessDenied("malformed scope token") from None

        # bytes, not str: header values may carry non-ascii characters
        expected = _sign(secret, encoded.encode("utf-8", errors="replace"))
        if not hmac.compare_digest(expected.encode("ascii"), sig.encode("utf-8", errors="replace")):
            raise AccessDenied("invalid scope token signature")

        try:
            padded = encoded + "=" * (-len(encoded) % 4)
            claims = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")))
            return cls(
                user_id=str(claims["sub"]),
                bucket=str(claims["bucket"]),
                object=str(claims["object"]),
                can_read=bool(claims["read"]),
                can_write=bool(claims["write"]),
                expires_at=datetime.fromtimestamp(int(claims["exp"]), tz=timezone.utc),
            )
        except (binascii.Error, ValueError, KeyError, TypeError) as exc:
            raise AccessDenied("malformed scope token") from exc


@dataclass(frozen=True)
class PresignedURL:
    url: str
    method: str
    expires_at: datetime


class PresignService:
    def __init__(
        self,
        buckets: BucketRepository,
        files: FileRepository,
        records: PresignRepository,
        store: ObjectStore,
        container: str,
        *,
        default_ttl_seconds: int = 900,
        max_ttl_seconds: int = 7 * 24 * 3600,
        token_secret: str = "",
        metrics: MetricsRecorder | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._buckets = buckets
        self._files = files
        self._records = records
        self._store = store
        self._container = container
        self._default_ttl = default_ttl_seconds
        self._max_ttl = max_ttl_seconds
        self._token_secret = token_secret
        self._metrics = metrics or NullMetrics()
        self._clock = clock

    def _ttl(self, ttl_seconds: Optional[int]) -> int:
        if ttl_seconds is None:
            return self._default_ttl
        if ttl_seconds <= 0 or ttl_seconds > self._max_ttl:
            raise InvalidInput(
                "ttl out of range", details={"ttl_seconds": ttl_seconds, "max_ttl_seconds": self._max_ttl}
            )
        return ttl_seconds

    def generate_url(
        self,
        actor_id: uuid.UUID,
        bucket_id: uuid.UUID,
        file_id: uuid.UUID,
        method: str,
        ttl_seconds: Optional[int] = None,
        scope: Optional[ScopeToken] = None,
    ) -> PresignedURL:
        # raw lookups: this layer tells "missing" apart from "not yours"
        bucket = self._buckets.get_by_id(bucket_id)
        record = self._files.get_by_id(file_id)

        method = (method or "").strip().upper()
        if method not in ALLOWED_METHODS:
            self._metrics.incr("presign_rejected_total", reason="method")
            raise InvalidMethod(f"unsupported method {method!r}", details={"allowed": list(ALLOWED_METHODS)})

        if record.bucket_id != bucket.id:
            self._metrics.incr("presign_rejected_total", reason="mismatch")
            raise MismatchedResource(
                "file does not belong to this bucket",
                details={"bucket_id": str(bucket_id), "file_id": str(file_id)},
            )

        write = method == "PUT"
        now = self._clock()
        if scope is not None:
            if not scope.allows(
                user_id=str(actor_id), bucket=bucket.name, object_name=record.object_name, write=write, now=now
            ):
                self._metrics.incr("presign_rejected_total", reason="scope")
                raise AccessDenied("access denied: invalid scope token")
        elif bucket.owner_id != actor_id:
            self._metrics.incr("presign_rejected_total", reason="owner")
            raise AccessDenied("access denied: not the owner")

        ttl = self._ttl(ttl_seconds)
        url = self._store.mint_url(self._container, record.object_name, method, ttl)
        expires_at = now + timedelta(seconds=ttl)

        self._records.save(
            PresignedRecord(
                bucket_id=bucket.id,
                file_id=record.id,
                object_name=record.object_name,
                method=method,
                expires_at=expires_at,
                created_by=actor_id,
                created_at=now,
            ),
            PresignedAudit(
                actor_id=actor_id,
                bucket_id=bucket.id,
                file_id=record.id,
                method=method,
                expires_at=expires_at,
                created_at=now,
            ),
        )
        self._metrics.incr("presigned_urls_total", method=method)
        logger.info(
            "presigned %s url issued actor=%s bucket=%s file=%s expires=%s",
            method,
            actor_id,
            bucket.id,
            record.id,
            expires_at.isoformat(),
        )
        return PresignedURL(url=url, method=method, expires_at=expires_at)

    def issue_scope_token(
        self,
        actor_id: uuid.UUID,
        bucket_id: uuid.UUID,
        file_id: uuid.UUID,
        *,
        can_read: bool = True,
        can_write: bool = False,
        ttl_seconds: Optional[int] = None,
        grantee_id: Optional[uuid.UUID] = None,
    ) -> tuple[str, ScopeToken]:
        """Owner-only: mint a signed token another principal can present instead of ownership."""
        if not self._token_secret:
            raise RuntimeError("SCOPE_TOKEN_SECRET not configured")
        if not (can_read or can_write):
            raise InvalidInput("scope token must grant read or write")

        bucket = self._buckets.get(actor_id, bucket_id)
        record = self._files.get(actor_id, bucket_id, file_id)

        token = ScopeToken(
            user_id=str(grantee_id or actor_id),
            bucket=bucket.name,
            object=record.object_name,
            can_read=can_read,
            can_write=can_write,
            expires_at=self._clock() + timedelta(seconds=self._ttl(ttl_seconds)),
        )
        self._metrics.incr("scope_tokens_total")
        return token.encode(self._token_secret), token

    def decode_scope_token(self, raw: str) -> ScopeToken:
        if not self._token_secret:
            raise AccessDenied("scope tokens are not accepted")
        return ScopeToken.decode(raw, self._token_secret)
