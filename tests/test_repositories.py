from __future__ import annotations

import uuid

import pytest
from sqlalchemy.exc import OperationalError

from conftest import upload_bytes
from drive.errors import NotFound, Unavailable
from drive.models import File
from drive.repositories import BucketRepository, FileRepository, transaction


def _track_rollbacks(db, monkeypatch):
    calls = []
    real_rollback = db.rollback

    def _rollback():
        calls.append(True)
        real_rollback()

    monkeypatch.setattr(db, "rollback", _rollback)
    return calls


def test_connectivity_failure_becomes_unavailable_and_rolls_back(db, owner_id, monkeypatch):
    rollbacks = _track_rollbacks(db, monkeypatch)

    def _commit():
        raise OperationalError("COMMIT", {}, Exception("server closed the connection unexpectedly"))

    monkeypatch.setattr(db, "commit", _commit)

    with pytest.raises(Unavailable) as exc_info:
        BucketRepository(db).create(owner_id, "docs", None)

    assert rollbacks == [True]
    assert exc_info.value.details == {"action": "create bucket"}

    monkeypatch.undo()
    assert BucketRepository(db).list(owner_id) == []


def test_other_failures_roll_back_and_propagate_unchanged(db, monkeypatch):
    rollbacks = _track_rollbacks(db, monkeypatch)

    with pytest.raises(KeyError):
        with transaction(db, "lookup"):
            raise KeyError("missing")

    assert rollbacks == [True]


def test_file_insert_into_vanished_bucket_is_not_found(db, owner_id):
    bucket = BucketRepository(db).create(owner_id, "docs", None)
    BucketRepository(db).delete(owner_id, bucket.id)
    record = File(
        bucket_id=bucket.id,
        object_name=f"{bucket.id}/{uuid.uuid4()}",
        original_filename="a.txt",
        size_bytes=1,
        content_type="text/plain",
        checksum="0" * 64,
    )

    with pytest.raises(NotFound):
        FileRepository(db).create(record)


def test_usage_delta_for_vanished_bucket_is_not_found(usage):
    with pytest.raises(NotFound):
        usage.apply_delta(uuid.uuid4(), 5, 1)


def test_upload_racing_bucket_delete_is_not_found_and_leaves_no_object(
    bucket_service, file_service, store, db, owner_id, monkeypatch
):
    bucket = bucket_service.create(owner_id, "docs")
    check_ownership = file_service._buckets.get

    def _get_then_vanish(owner, bucket_id):
        found = check_ownership(owner, bucket_id)
        BucketRepository(db).delete(owner, bucket_id)
        return found

    monkeypatch.setattr(file_service._buckets, "get", _get_then_vanish)

    with pytest.raises(NotFound):
        upload_bytes(file_service, owner_id, bucket.id, b"hello world")

    assert store.names() == set()
