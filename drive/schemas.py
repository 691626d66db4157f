import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class BucketCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=255)


class UsageOut(BaseModel):
    total_bytes: int
    file_count: int

    model_config = ConfigDict(from_attributes=True)


class BucketOut(BaseModel):
    id: uuid.UUID
    owner_id: uuid.UUID
    name: str
    description: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    usage: UsageOut = Field(validation_alias="usage_stats")

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)


class BucketList(BaseModel):
    buckets: list[BucketOut]


class FileOut(BaseModel):
    id: uuid.UUID
    bucket_id: uuid.UUID
    object_name: str
    original_filename: str
    size_bytes: int
    content_type: str
    checksum: str
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class FileList(BaseModel):
    files: list[FileOut]


class PresignRequest(BaseModel):
    method: str = "GET"
    ttl_seconds: Optional[int] = None


class PresignOut(BaseModel):
    url: str
    method: str
    expires_at: datetime


class ScopeTokenRequest(BaseModel):
    can_read: bool = True
    can_write: bool = False
    ttl_seconds: Optional[int] = None
    grantee_id: Optional[uuid.UUID] = None


class ScopeTokenOut(BaseModel):
    token: str
    user_id: str
    can_read: bool
    can_write: bool
    expires_at: datetime


class SnapshotOut(BaseModel):
    total_bytes: int
    file_count: int
    collected_at: datetime

    model_config = ConfigDict(from_attributes=True)


class SnapshotList(BaseModel):
    snapshots: list[SnapshotOut]


class SweepOut(BaseModel):
    scanned: int
    orphans: list[str]
    removed: int
    failed: int
    dry_run: bool
