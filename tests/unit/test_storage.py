"""Unit tests for the filesystem storage client."""

import hashlib
import io

import pytest

from sealedstore.core.exceptions import NoSuchUploadError, ObjectNotFoundError, StorageError
from sealedstore.core.hashing import etag_for_bytes, multipart_etag
from sealedstore.core.models import CompletedPart
from sealedstore.core.storage import LocalStorageClient


@pytest.fixture
def client(tmp_path):
    """Return a LocalStorageClient rooted in tmp_path."""
    return LocalStorageClient(str(tmp_path / "store"))


def read_all(client, **kwargs):
    with client.get_object(**kwargs) as body:
        return body.read()


# --- Objects ---

def test_put_and_get_bytes(client):
    result = client.put_object(bucket="b", key="dir/file.txt", data=b"hello", metadata={"n": 1})

    assert result.etag == etag_for_bytes(b"hello")
    assert read_all(client, bucket="b", key="dir/file.txt") == b"hello"
    head = client.head_object(bucket="b", key="dir/file.txt")
    assert head.content_length == 5
    assert head.metadata == {"n": "1"}


def test_put_from_stream(client):
    data = b"z" * 200_000
    client.put_object(bucket="b", key="k", data=io.BytesIO(data))
    assert read_all(client, bucket="b", key="k") == data


def test_put_checks_declared_length(client):
    with pytest.raises(StorageError, match="does not match"):
        client.put_object(bucket="b", key="k", data=b"abc", content_length=4)
    assert not client.exists("b", "k")


def test_rejected_put_keeps_existing_object(client):
    client.put_object(bucket="b", key="k", data=b"original", metadata={"v": "1"})
    with pytest.raises(StorageError, match="does not match"):
        client.put_object(bucket="b", key="k", data=b"new body", content_length=99)

    assert client.get_object(bucket="b", key="k").read() == b"original"
    head = client.head_object(bucket="b", key="k")
    assert head.content_length == 8
    assert head.metadata == {"v": "1"}
    assert list((client.bucket_root("b") / "blobs").iterdir()) == [client.blob_path("b", "k")]


def test_put_rejects_unknown_body(client):
    with pytest.raises(StorageError):
        client.put_object(bucket="b", key="k", data=123)


def test_put_overwrites(client):
    client.put_object(bucket="b", key="k", data=b"one")
    client.put_object(bucket="b", key="k", data=b"two!")
    assert read_all(client, bucket="b", key="k") == b"two!"


def test_layout_uses_hashed_keys(client):
    client.put_object(bucket="b", key="a/b/c", data=b"x")
    digest = hashlib.sha256(b"a/b/c").hexdigest()
    assert (client.root / "b" / "blobs" / digest).exists()
    assert (client.root / "b" / "meta" / f"{digest}.json").exists()


def test_get_range_is_inclusive(client):
    client.put_object(bucket="b", key="k", data=b"0123456789")
    assert read_all(client, bucket="b", key="k", byte_range=(2, 5)) == b"2345"


def test_missing_object_raises(client):
    with pytest.raises(ObjectNotFoundError):
        client.get_object(bucket="b", key="nope")
    with pytest.raises(ObjectNotFoundError):
        client.head_object(bucket="b", key="nope")


def test_versions_not_supported(client):
    client.put_object(bucket="b", key="k", data=b"x")
    with pytest.raises(StorageError, match="versions"):
        client.head_object(bucket="b", key="k", version_id="v1")


def test_delete_is_idempotent(client):
    client.put_object(bucket="b", key="k", data=b"x")
    client.delete_object(bucket="b", key="k")
    client.delete_object(bucket="b", key="k")
    assert not client.exists("b", "k")


def test_copy_keeps_metadata(client):
    client.put_object(bucket="b", key="src", data=b"payload", metadata={"a": "1"})
    client.copy_object(bucket="c", key="dst", source_bucket="b", source_key="src")

    assert read_all(client, bucket="c", key="dst") == b"payload"
    assert client.head_object(bucket="c", key="dst").metadata == {"a": "1"}


def test_copy_replace_metadata(client):
    client.put_object(bucket="b", key="src", data=b"payload", metadata={"a": "1"})
    client.copy_object(
        bucket="b", key="dst", source_bucket="b", source_key="src",
        metadata={"b": "2"}, metadata_directive="REPLACE", content_type="text/plain",
    )
    head = client.head_object(bucket="b", key="dst")
    assert head.metadata == {"b": "2"}
    assert head.content_type == "text/plain"


def test_copy_missing_source(client):
    with pytest.raises(ObjectNotFoundError):
        client.copy_object(bucket="b", key="dst", source_bucket="b", source_key="src")


# --- Multipart ---

def test_multipart_assembles_by_number(client):
    upload_id = client.create_multipart(bucket="b", key="big", metadata={"m": "x"})
    e2 = client.upload_part(upload_id, 2, b"world")
    e1 = client.upload_part(upload_id, 1, b"hello ")

    result = client.complete_multipart(upload_id, [CompletedPart(1, e1), CompletedPart(2, e2)])

    assert read_all(client, bucket="b", key="big") == b"hello world"
    assert result.etag == multipart_etag([e1, e2])
    assert result.etag.endswith('-2"')
    assert client.head_object(bucket="b", key="big").metadata == {"m": "x"}
    assert not client.upload_root(upload_id).exists()


def test_multipart_rejects_unsorted_parts(client):
    upload_id = client.create_multipart(bucket="b", key="k")
    e1 = client.upload_part(upload_id, 1, b"a")
    e2 = client.upload_part(upload_id, 2, b"b")
    with pytest.raises(StorageError, match="ascending"):
        client.complete_multipart(upload_id, [CompletedPart(2, e2), CompletedPart(1, e1)])


def test_multipart_rejects_wrong_etag(client):
    upload_id = client.create_multipart(bucket="b", key="k")
    client.upload_part(upload_id, 1, b"a")
    with pytest.raises(StorageError, match="invalid part"):
        client.complete_multipart(upload_id, [CompletedPart(1, '"bogus"')])


def test_multipart_last_write_wins(client):
    upload_id = client.create_multipart(bucket="b", key="k")
    client.upload_part(upload_id, 1, b"first")
    etag = client.upload_part(upload_id, 1, b"second")
    assert client.list_parts(upload_id) == {1: etag}


def test_abort_removes_upload(client):
    upload_id = client.create_multipart(bucket="b", key="k")
    client.upload_part(upload_id, 1, b"a")
    client.abort_multipart(upload_id)

    with pytest.raises(NoSuchUploadError):
        client.upload_part(upload_id, 2, b"b")
    with pytest.raises(NoSuchUploadError):
        client.abort_multipart(upload_id)
    assert not client.exists("b", "k")


@pytest.mark.parametrize("bucket", ["..", ".", "", "a/b", "..\\up", "../outside"])
def test_bucket_names_cannot_leave_root(client, bucket):
    with pytest.raises(StorageError, match="invalid bucket name"):
        client.put_object(bucket=bucket, key="k", data=b"x")
    with pytest.raises(StorageError, match="invalid bucket name"):
        client.head_object(bucket=bucket, key="k")
    with pytest.raises(StorageError, match="invalid bucket name"):
        client.create_multipart(bucket=bucket, key="k")


@pytest.mark.parametrize("upload_id", ["..", "../..", "x/../../store"])
def test_upload_ids_cannot_leave_root(client, upload_id):
    client.put_object(bucket="b", key="k", data=b"keep")
    with pytest.raises(StorageError, match="invalid upload id"):
        client.abort_multipart(upload_id)
    with pytest.raises(StorageError, match="invalid upload id"):
        client.upload_part(upload_id, 1, b"a")
    assert client.get_object(bucket="b", key="k").read() == b"keep"
