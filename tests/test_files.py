from __future__ import annotations

import hashlib
import io
import random
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from conftest import upload_bytes
from drive.errors import NotFound, TooLarge, Unavailable
from drive.files import DEFAULT_CONTENT_TYPE, DigestReader, sanitize_filename
from drive.models import File


def test_upload_stores_metadata_object_and_usage(bucket_service, file_service, usage, store, metrics, owner_id):
    bucket = bucket_service.create(owner_id, "docs")

    meta = upload_bytes(file_service, owner_id, bucket.id, b"hello world")

    assert meta.size_bytes == 11
    assert meta.checksum == hashlib.sha256(b"hello world").hexdigest()
    assert meta.object_name == f"{bucket.id}/{meta.id}"
    assert meta.original_filename == "notes.txt"
    assert meta.content_type == "text/plain"
    assert store.names() == {meta.object_name}

    stats = usage.stats(bucket.id)
    assert (stats.total_bytes, stats.file_count) == (11, 1)
    assert usage.history(owner_id)[0].total_bytes == 11
    assert metrics.observations("upload_bytes") == [11]


def test_upload_then_download_round_trips_bytes(bucket_service, file_service, owner_id):
    bucket = bucket_service.create(owner_id, "docs")
    payload = bytes(range(256)) * 3

    meta = upload_bytes(file_service, owner_id, bucket.id, payload, filename="blob.bin")
    record, body = file_service.download(owner_id, bucket.id, meta.id)

    assert record.id == meta.id
    assert body.read() == payload
    assert record.checksum == hashlib.sha256(payload).hexdigest()


def test_upload_defaults_content_type_and_filename(bucket_service, file_service, owner_id):
    bucket = bucket_service.create(owner_id, "docs")

    meta = file_service.upload(owner_id, bucket.id, io.BytesIO(b"x"), 1, "   ", None)

    assert meta.content_type == DEFAULT_CONTENT_TYPE
    assert meta.original_filename == "upload"


def test_upload_into_foreign_bucket_is_not_found(bucket_service, file_service, store, owner_id):
    bucket = bucket_service.create(owner_id, "docs")

    with pytest.raises(NotFound):
        upload_bytes(file_service, uuid.uuid4(), bucket.id, b"data")

    assert store.names() == set()


def test_upload_rejects_declared_size_over_limit(bucket_service, file_service, store, owner_id):
    bucket = bucket_service.create(owner_id, "docs")

    with pytest.raises(TooLarge):
        file_service.upload(owner_id, bucket.id, io.BytesIO(b"x"), 4096, "big.bin", None)

    assert store.names() == set()


def test_upload_with_lying_declared_size_is_rejected_and_object_removed(
    bucket_service, file_service, usage, store, db, owner_id
):
    bucket = bucket_service.create(owner_id, "docs")
    payload = b"a" * 2048

    with pytest.raises(TooLarge):
        file_service.upload(owner_id, bucket.id, io.BytesIO(payload), 10, "liar.bin", None)

    assert store.names() == set()
    assert db.scalar(select(func.count()).select_from(File)) == 0
    assert usage.stats(bucket.id).total_bytes == 0


def test_metadata_failure_removes_written_object(bucket_service, file_service, store, metrics, owner_id, monkeypatch):
    bucket = bucket_service.create(owner_id, "docs")

    def _boom(_record):
        raise Unavailable("metadata store unavailable")

    monkeypatch.setattr(file_service._repo, "create", _boom)

    with pytest.raises(Unavailable):
        upload_bytes(file_service, owner_id, bucket.id, b"payload")

    assert store.names() == set()
    assert len(store.removed) == 1
    assert metrics.count("compensation_failures_total") == 0


def test_compensation_failure_is_logged_and_primary_error_surfaces(
    bucket_service, file_service, store, metrics, owner_id, monkeypatch
):
    bucket = bucket_service.create(owner_id, "docs")

    class MetadataDown(Exception):
        pass

    def _boom(_record):
        raise MetadataDown("insert failed")

    monkeypatch.setattr(file_service._repo, "create", _boom)
    store.fail_all_removes = True

    with pytest.raises(MetadataDown):
        upload_bytes(file_service, owner_id, bucket.id, b"payload")

    assert metrics.count("compensation_failures_total") == 1
    assert len(store.names()) == 1


def test_store_failure_on_put_leaves_no_metadata(bucket_service, file_service, store, db, owner_id):
    bucket = bucket_service.create(owner_id, "docs")
    store.fail_put = True

    with pytest.raises(Unavailable):
        upload_bytes(file_service, owner_id, bucket.id, b"payload")

    assert db.scalar(select(func.count()).select_from(File)) == 0


def test_delete_restores_usage_and_returns_record(bucket_service, file_service, usage, store, owner_id):
    bucket = bucket_service.create(owner_id, "docs")
    meta = upload_bytes(file_service, owner_id, bucket.id, b"hello world")

    deleted = file_service.delete(owner_id, bucket.id, meta.id)

    assert deleted.id == meta.id
    assert deleted.size_bytes == 11
    assert store.names() == set()
    stats = usage.stats(bucket.id)
    assert (stats.total_bytes, stats.file_count) == (0, 0)


def test_delete_removes_metadata_before_object(bucket_service, file_service, usage, store, owner_id):
    bucket = bucket_service.create(owner_id, "docs")
    meta = upload_bytes(file_service, owner_id, bucket.id, b"hello world")
    store.fail_remove.add(meta.object_name)

    with pytest.raises(Unavailable):
        file_service.delete(owner_id, bucket.id, meta.id)

    # the orphan is the object, never the row
    assert store.names() == {meta.object_name}
    with pytest.raises(NotFound):
        file_service.download(owner_id, bucket.id, meta.id)
    stats = usage.stats(bucket.id)
    assert (stats.total_bytes, stats.file_count) == (0, 0)


def test_delete_by_non_owner_is_not_found(bucket_service, file_service, store, owner_id):
    bucket = bucket_service.create(owner_id, "docs")
    meta = upload_bytes(file_service, owner_id, bucket.id, b"data")

    with pytest.raises(NotFound):
        file_service.delete(uuid.uuid4(), bucket.id, meta.id)

    assert store.names() == {meta.object_name}


def test_download_through_wrong_bucket_is_not_found(bucket_service, file_service, owner_id):
    first = bucket_service.create(owner_id, "first")
    second = bucket_service.create(owner_id, "second")
    meta = upload_bytes(file_service, owner_id, first.id, b"data")

    with pytest.raises(NotFound):
        file_service.download(owner_id, second.id, meta.id)


def test_list_is_owner_scoped_and_newest_first(bucket_service, file_service, db, owner_id):
    bucket = bucket_service.create(owner_id, "docs")
    older = upload_bytes(file_service, owner_id, bucket.id, b"one", filename="one.txt")
    newer = upload_bytes(file_service, owner_id, bucket.id, b"two", filename="two.txt")
    older.created_at = datetime.now(timezone.utc) - timedelta(hours=1)
    db.commit()

    listed = file_service.list(owner_id, bucket.id)

    assert [f.id for f in listed] == [newer.id, older.id]
    with pytest.raises(NotFound):
        file_service.list(uuid.uuid4(), bucket.id)


def test_usage_matches_live_files_after_mixed_operations(bucket_service, file_service, usage, db, owner_id):
    rng = random.Random(7)
    bucket = bucket_service.create(owner_id, "docs")
    live = []

    for _ in range(40):
        if live and rng.random() < 0.4:
            victim = live.pop(rng.randrange(len(live)))
            file_service.delete(owner_id, bucket.id, victim.id)
        else:
            payload = bytes(rng.randrange(256) for _ in range(rng.randrange(0, 200)))
            live.append(upload_bytes(file_service, owner_id, bucket.id, payload))

    rows = db.execute(
        select(func.coalesce(func.sum(File.size_bytes), 0), func.count()).where(File.bucket_id == bucket.id)
    ).one()
    stats = usage.stats(bucket.id)
    assert stats.total_bytes == rows[0] == sum(f.size_bytes for f in live)
    assert stats.file_count == rows[1] == len(live)


def test_objects_for_bucket_lists_names_and_sizes(bucket_service, file_service, owner_id):
    bucket = bucket_service.create(owner_id, "docs")
    a = upload_bytes(file_service, owner_id, bucket.id, b"aaa")
    b = upload_bytes(file_service, owner_id, bucket.id, b"bbbbb")

    objects = {o.object_name: o.size_bytes for o in file_service.objects_for_bucket(bucket.id)}

    assert objects == {a.object_name: 3, b.object_name: 5}


def test_digest_reader_hashes_in_a_single_pass():
    reader = DigestReader(io.BytesIO(b"hello world"))

    assert reader.read(5) == b"hello"
    assert reader.read() == b" world"
    assert reader.read() == b""
    assert reader.bytes_read == 11
    assert reader.hexdigest() == hashlib.sha256(b"hello world").hexdigest()


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("report.pdf", "report.pdf"),
        ("  spaced.txt  ", "spaced.txt"),
        ("../../etc/passwd", "passwd"),
        ("C:\\Users\\me\\photo.jpg", "photo.jpg"),
        ("", "upload"),
        (None, "upload"),
        ("..", "upload"),
    ],
)
def test_sanitize_filename(raw, expected):
    assert sanitize_filename(raw) == expected
