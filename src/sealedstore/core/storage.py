"""
Storage client protocol and a filesystem implementation of it.

The transfer engine only talks to an object store through ``StorageClient``.
Transport, retries and authentication belong to the implementation; errors
it raises reach the caller unchanged.

Structure Map for LocalStorageClient:
==============================
 - <storage_root>/
      - <bucket>/
          - blobs/
              - {sha256(key)}          object bytes
          - meta/
              - {sha256(key)}.json     key, etag, size, metadata
      - .uploads/
          - {upload_id}/
              - upload.json            bucket, key, metadata
              - part-{number:05d}
==============================
Keys are hashed for file names so any key (slashes, unicode) maps to one
flat file.
"""

from __future__ import annotations

import hashlib
import io
import json
import os
import shutil
import tempfile
import uuid
from pathlib import Path
from typing import Any, BinaryIO, Dict, Optional, Protocol, Sequence, Tuple

from .exceptions import NoSuchUploadError, ObjectNotFoundError, StorageError
from .hashing import etag_for_bytes, multipart_etag
from .models import CompletedPart, ObjectHead, PutResult, metadata_to_dict


COPY_CHUNK = 65536


class StorageClient(Protocol):
    """Operations the transfer engine needs from an object store."""

    def put_object(
        self,
        *,
        bucket: str,
        key: str,
        data,
        content_length: Optional[int] = None,
        metadata: Optional[Dict[str, str]] = None,
        server_side_encryption: Optional[str] = None,
    ) -> PutResult:
        """Store ``data`` (bytes or a readable) as ``bucket/key``."""
        ...

    def get_object(
        self,
        *,
        bucket: str,
        key: str,
        version_id: Optional[str] = None,
        byte_range: Optional[Tuple[int, int]] = None,
    ) -> BinaryIO:
        """Readable body of the object; ``byte_range`` is inclusive."""
        ...

    def delete_object(self, *, bucket: str, key: str, version_id: Optional[str] = None) -> None:
        ...

    def copy_object(
        self,
        *,
        bucket: str,
        key: str,
        source_bucket: str,
        source_key: str,
        version_id: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
        metadata_directive: str = "COPY",
        server_side_encryption: Optional[str] = None,
        content_type: Optional[str] = None,
    ) -> PutResult:
        ...

    def head_object(self, *, bucket: str, key: str, version_id: Optional[str] = None) -> ObjectHead:
        ...

    def create_multipart(
        self,
        *,
        bucket: str,
        key: str,
        metadata: Optional[Dict[str, str]] = None,
        server_side_encryption: Optional[str] = None,
    ) -> str:
        """Open a multipart upload and return its upload id."""
        ...

    def upload_part(self, upload_id: str, part_number: int, data: bytes) -> str:
        """Upload one part and return its ETag."""
        ...

    def complete_multipart(self, upload_id: str, parts: Sequence[CompletedPart]) -> PutResult:
        """Assemble ``parts`` (ascending part numbers) into the final object."""
        ...

    def abort_multipart(self, upload_id: str) -> None:
        ...


def _key_digest(key: str) -> str:
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


def _path_segment(value: str, what: str) -> str:
    # bucket names and upload ids become single directory names under root
    if not value or value in (".", "..") or "/" in value or "\\" in value or "\0" in value:
        raise StorageError(f"invalid {what}: {value!r}")
    return value


class LocalStorageClient:
    """StorageClient backed by a directory tree. Objects are not versioned."""

    def __init__(self, root_path: Optional[str] = None):
        self.root = (
            Path(root_path).expanduser() if root_path else Path.home() / ".sealedstore"
        )
        self.root.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Path helpers
    # ------------------------------------------------------------------

    def bucket_root(self, bucket: str) -> Path:
        return self.root / _path_segment(bucket, "bucket name")

    def blob_path(self, bucket: str, key: str) -> Path:
        return self.bucket_root(bucket) / "blobs" / _key_digest(key)

    def meta_path(self, bucket: str, key: str) -> Path:
        return self.bucket_root(bucket) / "meta" / f"{_key_digest(key)}.json"

    def upload_root(self, upload_id: str) -> Path:
        return self.root / ".uploads" / _path_segment(upload_id, "upload id")

    def part_path(self, upload_id: str, part_number: int) -> Path:
        return self.upload_root(upload_id) / f"part-{part_number:05d}"

    def _ensure_bucket(self, bucket: str) -> None:
        (self.bucket_root(bucket) / "blobs").mkdir(parents=True, exist_ok=True)
        (self.bucket_root(bucket) / "meta").mkdir(parents=True, exist_ok=True)

    @staticmethod
    def _no_versions(version_id: Optional[str]) -> None:
        if version_id is not None:
            raise StorageError("LocalStorageClient does not keep object versions")

    def _load_meta(self, bucket: str, key: str) -> Dict[str, Any]:
        p = self.meta_path(bucket, key)
        if not p.exists() or not self.blob_path(bucket, key).exists():
            raise ObjectNotFoundError(f"no such key: {bucket}/{key}")
        with open(p, "r", encoding="utf-8") as f:
            return json.load(f)

    def _save_meta(self, bucket: str, key: str, meta: Dict[str, Any]) -> None:
        with open(self.meta_path(bucket, key), "w", encoding="utf-8") as f:
            json.dump(meta, f, ensure_ascii=False)

    def _write_blob(
        self, bucket: str, key: str, chunks, expected_size: Optional[int] = None
    ) -> Tuple[int, str]:
        """
        Write chunks to a temp file and move it into place; returns (size, md5 hex).

        When ``expected_size`` is given and the body differs, the temp file is
        discarded and any existing blob is left untouched.
        """
        self._ensure_bucket(bucket)
        destination = self.blob_path(bucket, key)
        md5 = hashlib.md5()
        size = 0
        fd, tmp_name = tempfile.mkstemp(dir=destination.parent)
        try:
            with os.fdopen(fd, "wb") as out:
                for chunk in chunks:
                    md5.update(chunk)
                    size += len(chunk)
                    out.write(chunk)
            if expected_size is not None and size != expected_size:
                raise StorageError(
                    f"declared content length {expected_size} does not match body size {size}"
                )
            os.replace(tmp_name, destination)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        return size, md5.hexdigest()

    # ------------------------------------------------------------------
    # Object operations
    # ------------------------------------------------------------------

    def put_object(
        self,
        *,
        bucket: str,
        key: str,
        data,
        content_length: Optional[int] = None,
        metadata: Optional[Dict[str, str]] = None,
        server_side_encryption: Optional[str] = None,
        content_type: Optional[str] = None,
    ) -> PutResult:
        if isinstance(data, (bytes, bytearray, memoryview)):
            chunks = [bytes(data)]
        elif hasattr(data, "read"):
            chunks = iter(lambda: data.read(COPY_CHUNK), b"")
        else:
            raise StorageError(f"unsupported body type: {type(data).__name__}")

        size, digest = self._write_blob(bucket, key, chunks, expected_size=content_length)
        etag = '"%s"' % digest
        self._save_meta(bucket, key, {
            "key": key,
            "etag": etag,
            "content_length": size,
            "content_type": content_type,
            "server_side_encryption": server_side_encryption,
            "metadata": metadata_to_dict(metadata),
        })
        return PutResult(etag=etag)

    def get_object(
        self,
        *,
        bucket: str,
        key: str,
        version_id: Optional[str] = None,
        byte_range: Optional[Tuple[int, int]] = None,
    ) -> BinaryIO:
        self._no_versions(version_id)
        self._load_meta(bucket, key)
        if byte_range is None:
            return open(self.blob_path(bucket, key), "rb")
        start, end = byte_range
        with open(self.blob_path(bucket, key), "rb") as f:
            f.seek(start)
            return io.BytesIO(f.read(end - start + 1))

    def head_object(self, *, bucket: str, key: str, version_id: Optional[str] = None) -> ObjectHead:
        self._no_versions(version_id)
        meta = self._load_meta(bucket, key)
        return ObjectHead(
            content_length=meta["content_length"],
            etag=meta.get("etag"),
            metadata=dict(meta.get("metadata") or {}),
            content_type=meta.get("content_type"),
            server_side_encryption=meta.get("server_side_encryption"),
        )

    def exists(self, bucket: str, key: str) -> bool:
        return self.meta_path(bucket, key).exists() and self.blob_path(bucket, key).exists()

    def delete_object(self, *, bucket: str, key: str, version_id: Optional[str] = None) -> None:
        # deleting a missing key succeeds, as on S3
        self._no_versions(version_id)
        self.blob_path(bucket, key).unlink(missing_ok=True)
        self.meta_path(bucket, key).unlink(missing_ok=True)

    def copy_object(
        self,
        *,
        bucket: str,
        key: str,
        source_bucket: str,
        source_key: str,
        version_id: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
        metadata_directive: str = "COPY",
        server_side_encryption: Optional[str] = None,
        content_type: Optional[str] = None,
    ) -> PutResult:
        self._no_versions(version_id)
        source_meta = self._load_meta(source_bucket, source_key)
        if metadata_directive == "REPLACE":
            new_metadata = metadata_to_dict(metadata)
        elif metadata_directive == "COPY":
            new_metadata = dict(source_meta.get("metadata") or {})
        else:
            raise StorageError(f"invalid metadata directive: {metadata_directive!r}")

        with open(self.blob_path(source_bucket, source_key), "rb") as src:
            size, digest = self._write_blob(bucket, key, iter(lambda: src.read(COPY_CHUNK), b""))
        etag = source_meta.get("etag") or '"%s"' % digest
        self._save_meta(bucket, key, {
            "key": key,
            "etag": etag,
            "content_length": size,
            "content_type": content_type or source_meta.get("content_type"),
            "server_side_encryption": server_side_encryption,
            "metadata": new_metadata,
        })
        return PutResult(etag=etag)

    # ------------------------------------------------------------------
    # Multipart uploads
    # ------------------------------------------------------------------

    def _load_upload(self, upload_id: str) -> Dict[str, Any]:
        p = self.upload_root(upload_id) / "upload.json"
        if not p.exists():
            raise NoSuchUploadError(f"no such upload: {upload_id}")
        with open(p, "r", encoding="utf-8") as f:
            return json.load(f)

    def create_multipart(
        self,
        *,
        bucket: str,
        key: str,
        metadata: Optional[Dict[str, str]] = None,
        server_side_encryption: Optional[str] = None,
    ) -> str:
        _path_segment(bucket, "bucket name")
        upload_id = uuid.uuid4().hex
        root = self.upload_root(upload_id)
        root.mkdir(parents=True)
        with open(root / "upload.json", "w", encoding="utf-8") as f:
            json.dump({
                "bucket": bucket,
                "key": key,
                "metadata": metadata_to_dict(metadata),
                "server_side_encryption": server_side_encryption,
            }, f, ensure_ascii=False)
        return upload_id

    def upload_part(self, upload_id: str, part_number: int, data: bytes) -> str:
        self._load_upload(upload_id)
        self.part_path(upload_id, part_number).write_bytes(data)
        return etag_for_bytes(data)

    def list_parts(self, upload_id: str) -> Dict[int, str]:
        """Part number -> ETag for the parts currently stored."""
        self._load_upload(upload_id)
        parts = {}
        for p in sorted(self.upload_root(upload_id).glob("part-*")):
            parts[int(p.name.split("-", 1)[1])] = etag_for_bytes(p.read_bytes())
        return parts

    def complete_multipart(self, upload_id: str, parts: Sequence[CompletedPart]) -> PutResult:
        upload = self._load_upload(upload_id)
        if not parts:
            raise StorageError("a multipart upload needs at least one part")
        numbers = [p.part_number for p in parts]
        if numbers != sorted(set(numbers)):
            raise StorageError("parts must be listed in ascending part number order")

        stored = self.list_parts(upload_id)
        for part in parts:
            if stored.get(part.part_number) != part.etag:
                raise StorageError(f"invalid part {part.part_number} for upload {upload_id}")

        def chunks():
            for part in parts:
                with open(self.part_path(upload_id, part.part_number), "rb") as f:
                    yield from iter(lambda: f.read(COPY_CHUNK), b"")

        bucket, key = upload["bucket"], upload["key"]
        size, _ = self._write_blob(bucket, key, chunks())
        etag = multipart_etag(p.etag for p in parts)
        self._save_meta(bucket, key, {
            "key": key,
            "etag": etag,
            "content_length": size,
            "content_type": None,
            "server_side_encryption": upload.get("server_side_encryption"),
            "metadata": upload.get("metadata") or {},
        })
        shutil.rmtree(self.upload_root(upload_id))
        return PutResult(etag=etag)

    def abort_multipart(self, upload_id: str) -> None:
        self._load_upload(upload_id)
        shutil.rmtree(self.upload_root(upload_id))
