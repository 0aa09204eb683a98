"""End-to-end tests for ObjectTransfer against the filesystem storage client."""

import base64
import hashlib
import io
import os
from unittest.mock import MagicMock

import pytest
from cryptography.hazmat.primitives.asymmetric import rsa

from sealedstore.core.config import TransferConfig
from sealedstore.core.exceptions import (
    KeyMismatchError,
    MaterialsNotFoundError,
    MissingSizeHintError,
    RangeNotSupportedError,
    StorageError,
)
from sealedstore.core.models import AsymmetricKey, Credentials, MaterialsLocation, SymmetricKey
from sealedstore.core.storage import LocalStorageClient
from sealedstore.core.transfer import ObjectTransfer
from sealedstore.security.crypto import encrypted_size
from sealedstore.security.materials import (
    IV_FIELD,
    KEY_FIELD,
    UNENCRYPTED_LENGTH_FIELD,
    UNENCRYPTED_MD5_FIELD,
)


THRESHOLD = 1024
MIN_PART = 256


class UnsizedStream:
    """Readable with no known length, like a socket or pipe."""

    def __init__(self, data: bytes):
        self._buf = io.BytesIO(data)

    def read(self, size=-1):
        return self._buf.read(size)


@pytest.fixture
def client(tmp_path):
    return LocalStorageClient(str(tmp_path / "store"))


@pytest.fixture
def config():
    return TransferConfig(
        multipart_threshold=THRESHOLD,
        multipart_min_part_size=MIN_PART,
        credentials=Credentials("AKID", "secret"),
    )


@pytest.fixture
def transfer(client, config):
    return ObjectTransfer(client, config)


@pytest.fixture
def master():
    return SymmetricKey(os.urandom(32))


@pytest.fixture(scope="module")
def rsa_pair():
    return AsymmetricKey.from_private_key(
        rsa.generate_private_key(public_exponent=65537, key_size=2048)
    )


def stored_bytes(client, bucket, key):
    with client.get_object(bucket=bucket, key=key) as body:
        return body.read()


# ==============================================================================
# Plain transfers
# ==============================================================================

def test_direct_write_and_read(transfer, client):
    result = transfer.write("b", "small.txt", b"hello", metadata={"owner": "alice"})

    assert result.etag is not None
    assert "-" not in result.etag
    assert transfer.read("b", "small.txt") == b"hello"
    assert transfer.head("b", "small.txt").metadata == {"owner": "alice"}


def test_large_write_uses_multipart(transfer):
    data = os.urandom(THRESHOLD * 5)
    result = transfer.write("b", "big.bin", data)

    # ceil(5120 / 256) parts
    assert result.etag.endswith('-20"')
    assert transfer.read("b", "big.bin") == data


def test_threshold_boundary(transfer):
    at = transfer.write("b", "at", b"x" * THRESHOLD)
    above = transfer.write("b", "above", b"x" * (THRESHOLD + 1))
    assert "-" not in at.etag
    assert above.etag.endswith('-5"')


def test_write_from_path(transfer, tmp_path):
    src = tmp_path / "upload.bin"
    src.write_bytes(b"from disk" * 500)
    transfer.write("b", "from-path", src)
    assert transfer.read("b", "from-path") == b"from disk" * 500


def test_unsized_stream_needs_a_hint(transfer, client):
    with pytest.raises(MissingSizeHintError):
        transfer.write("b", "k", UnsizedStream(b"data"))
    assert not client.exists("b", "k")


def test_unsized_stream_single_request_is_buffered(transfer, client):
    transfer.write("b", "k", UnsizedStream(b"data" * 1000), single_request=True)
    assert client.head_object(bucket="b", key="k").content_length == 4000


def test_unsized_stream_with_estimate(transfer):
    data = os.urandom(3000)
    result = transfer.write("b", "k", UnsizedStream(data), estimated_content_length=3000)
    assert result.etag.endswith('-12"')
    assert transfer.read("b", "k") == data


def test_empty_unsized_stream_via_multipart(transfer, client):
    transfer.write("b", "empty", UnsizedStream(b""), estimated_content_length=THRESHOLD * 2)
    assert transfer.read("b", "empty") == b""


def test_per_call_thresholds(transfer):
    result = transfer.write("b", "k", b"x" * 100, multipart_threshold=10, multipart_min_part_size=40)
    assert result.etag.endswith('-3"')


def test_byte_range_read(transfer):
    transfer.write("b", "k", b"0123456789")
    assert transfer.read("b", "k", byte_range=(3, 6)) == b"3456"
    assert transfer.read("b", "k", byte_range=range(0, 2)) == b"01"


def test_stream_yields_chunks(transfer):
    data = os.urandom(200_000)
    transfer.write("b", "k", data, single_request=True)
    chunks = list(transfer.stream("b", "k"))
    assert len(chunks) > 1
    assert b"".join(chunks) == data


# ==============================================================================
# Client-side encryption
# ==============================================================================

@pytest.mark.parametrize("length", [0, 1, 16, 500])
def test_encrypted_direct_roundtrip(transfer, client, master, length):
    data = os.urandom(length)
    transfer.write("b", "secret", data, encryption_key=master)

    raw = stored_bytes(client, "b", "secret")
    assert len(raw) == encrypted_size(length)
    if length >= 16:
        assert data not in raw

    meta = client.head_object(bucket="b", key="secret").metadata
    assert KEY_FIELD in meta and IV_FIELD in meta
    assert meta[UNENCRYPTED_LENGTH_FIELD] == str(length)

    assert transfer.read("b", "secret", encryption_key=master) == data


def test_encrypted_multipart_roundtrip(transfer, client, master):
    data = os.urandom(THRESHOLD * 3 + 7)
    result = transfer.write("b", "secret", data, encryption_key=master)

    assert "-" in result.etag
    assert len(stored_bytes(client, "b", "secret")) == encrypted_size(len(data))
    assert transfer.read("b", "secret", encryption_key=master) == data


def test_encrypted_unsized_stream(transfer, master):
    data = os.urandom(2500)
    transfer.write("b", "secret", UnsizedStream(data), estimated_content_length=2500, encryption_key=master)
    assert transfer.read("b", "secret", encryption_key=master) == data


def test_configured_key_is_used_by_default(client, config, master):
    transfer = ObjectTransfer(client, config.replace(encryption_key=master))
    transfer.write("b", "k", b"payload")
    assert stored_bytes(client, "b", "k") != b"payload"
    assert transfer.read("b", "k") == b"payload"


def test_raw_key_bytes_are_accepted(transfer, client):
    key = os.urandom(16)
    transfer.write("b", "k", b"payload", encryption_key=key)
    assert transfer.read("b", "k", encryption_key=key) == b"payload"


def test_content_md5_hint(transfer, client, master):
    md5 = base64.b64encode(hashlib.md5(b"payload").digest()).decode("ascii")
    transfer.write("b", "k", b"payload", encryption_key=master, content_md5=md5)
    assert client.head_object(bucket="b", key="k").metadata[UNENCRYPTED_MD5_FIELD] == md5


def test_instruction_file_roundtrip(transfer, client, master):
    transfer.write("b", "k", b"payload", encryption_key=master, materials_location="instruction_file")

    meta = client.head_object(bucket="b", key="k").metadata
    assert KEY_FIELD not in meta
    assert client.exists("b", "k.instruction")
    assert transfer.read(
        "b", "k", encryption_key=master, materials_location=MaterialsLocation.INSTRUCTION_FILE
    ) == b"payload"


def test_instruction_file_write_default_read_fails(transfer, master):
    transfer.write("b", "k", b"payload", encryption_key=master, materials_location="instruction_file")
    with pytest.raises(MaterialsNotFoundError):
        transfer.read("b", "k", encryption_key=master)


def test_reading_plain_object_with_key_fails(transfer, master):
    transfer.write("b", "k", b"plain")
    with pytest.raises(MaterialsNotFoundError):
        transfer.read("b", "k", encryption_key=master)


def test_wrong_key_raises_key_mismatch(transfer, master):
    transfer.write("b", "k", b"payload", encryption_key=master)
    with pytest.raises(KeyMismatchError):
        transfer.read("b", "k", encryption_key=SymmetricKey(os.urandom(32)))


def test_range_with_encryption_is_rejected(transfer, master):
    transfer.write("b", "k", b"payload", encryption_key=master)
    with pytest.raises(RangeNotSupportedError):
        transfer.read("b", "k", encryption_key=master, byte_range=(0, 3))


def test_rsa_public_writer_private_reader(transfer, rsa_pair):
    writer_key = AsymmetricKey(rsa_pair.public_key)
    data = os.urandom(THRESHOLD * 2)
    transfer.write("b", "k", data, encryption_key=writer_key)
    assert transfer.read("b", "k", encryption_key=rsa_pair) == data


def test_encryption_reads_without_key_return_ciphertext(transfer, client, master):
    transfer.write("b", "k", b"payload", encryption_key=master)
    assert transfer.read("b", "k") == stored_bytes(client, "b", "k")


# ==============================================================================
# Server-side encryption option
# ==============================================================================

def test_server_side_encryption_defaults_and_overrides(client, config):
    transfer = ObjectTransfer(client, config.replace(server_side_encryption="AES256"))

    transfer.write("b", "default", b"x")
    transfer.write("b", "disabled", b"x", server_side_encryption=None)
    transfer.write("b", "explicit", b"x", server_side_encryption="aws:kms")

    assert transfer.head("b", "default").server_side_encryption == "AES256"
    assert transfer.head("b", "disabled").server_side_encryption is None
    assert transfer.head("b", "explicit").server_side_encryption == "aws:kms"


def test_server_side_encryption_on_multipart(client, config):
    transfer = ObjectTransfer(client, config.replace(server_side_encryption="AES256"))
    transfer.write("b", "big", os.urandom(THRESHOLD * 2))
    assert transfer.head("b", "big").server_side_encryption == "AES256"


# ==============================================================================
# Caller-driven multipart uploads
# ==============================================================================

def test_multipart_upload_orders_parts_by_number(transfer):
    with transfer.multipart_upload("b", "k", metadata={"kind": "manual"}) as upload:
        upload.add_part(b"world", part_number=2)
        upload.add_part(b"hello ", part_number=1)

    assert upload.result.etag.endswith('-2"')
    assert transfer.read("b", "k") == b"hello world"
    assert transfer.head("b", "k").metadata == {"kind": "manual"}


def test_multipart_upload_aborts_on_error(transfer, client):
    with pytest.raises(RuntimeError):
        with transfer.multipart_upload("b", "k") as upload:
            upload.add_part(b"partial")
            raise RuntimeError("caller gave up")

    assert not client.upload_root(upload.upload_id).exists()
    assert not transfer.exists("b", "k")


def test_failed_part_aborts_write(client, config):
    spy = MagicMock(wraps=client)

    def flaky(upload_id, number, data):
        if number == 2:
            raise StorageError("connection reset")
        return client.upload_part(upload_id, number, data)

    spy.upload_part.side_effect = flaky
    transfer = ObjectTransfer(spy, config)

    with pytest.raises(StorageError, match="connection reset"):
        transfer.write("b", "k", os.urandom(THRESHOLD * 2))

    spy.abort_multipart.assert_called_once()
    spy.complete_multipart.assert_not_called()
    assert not client.exists("b", "k")


# ==============================================================================
# Copy / move / delete
# ==============================================================================

def test_copy_plain_object(transfer):
    transfer.write("b", "src", b"payload", metadata={"a": "1"})
    transfer.copy_from("c", "dst", "b", "src")
    assert transfer.read("c", "dst") == b"payload"
    assert transfer.head("c", "dst").metadata == {"a": "1"}


def test_copy_with_new_metadata_and_content_type(transfer):
    transfer.write("b", "src", b"payload", metadata={"a": "1"})
    transfer.copy_from("b", "dst", "b", "src", metadata={"b": "2"}, content_type="text/plain")
    head = transfer.head("b", "dst")
    assert head.metadata == {"b": "2"}
    assert head.content_type == "text/plain"


def test_copy_encrypted_object_replacing_metadata(transfer, master):
    transfer.write("b", "src", b"payload", encryption_key=master, metadata={"a": "1"})
    transfer.copy_from("b", "dst", "b", "src", client_side_encrypted=True, metadata={"b": "2"})

    meta = transfer.head("b", "dst").metadata
    assert meta["b"] == "2"
    assert "a" not in meta
    assert transfer.read("b", "dst", encryption_key=master) == b"payload"


def test_copy_encrypted_object_with_instruction_file(transfer, client, master):
    transfer.write("b", "src", b"payload", encryption_key=master, materials_location="instruction_file")
    transfer.copy_to("b", "src", "c", "dst", client_side_encrypted=True)

    assert client.exists("c", "dst.instruction")
    assert transfer.read("c", "dst", encryption_key=master, materials_location="instruction_file") == b"payload"


def test_move_to(transfer):
    transfer.write("b", "src", b"payload")
    transfer.move_to("b", "src", "b", "dst")
    assert not transfer.exists("b", "src")
    assert transfer.read("b", "dst") == b"payload"


def test_delete_with_instruction_file(transfer, client, master):
    transfer.write("b", "k", b"payload", encryption_key=master, materials_location="instruction_file")

    transfer.delete("b", "k")
    assert client.exists("b", "k.instruction")

    transfer.delete("b", "k", delete_instruction_file=True)
    assert not client.exists("b", "k.instruction")


def test_exists(transfer):
    assert not transfer.exists("b", "k")
    transfer.write("b", "k", b"")
    assert transfer.exists("b", "k")


# ==============================================================================
# URLs
# ==============================================================================

def test_urls(transfer):
    assert transfer.public_url("bucket", "k") == "https://bucket.s3.amazonaws.com/k"
    url = transfer.url_for("bucket", "k", method="read", expires=60, now=1_300_000_000)
    assert url.startswith("https://bucket.s3.amazonaws.com/k?AWSAccessKeyId=AKID&Signature=")
    assert url.endswith("&Expires=1300000060")
