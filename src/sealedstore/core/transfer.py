"""
Object transfer engine.

ObjectTransfer ties the pieces together for one storage client:

    write:  generate envelope -> wrap data key -> store materials
            -> encrypt source on the fly -> plan -> put or multipart
    read:   retrieve materials -> unwrap data key -> decrypt body

Every call takes its defaults from the TransferConfig given at construction;
per-call keyword arguments override them for that call only.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterator, Optional, Tuple

from .config import TransferConfig
from .exceptions import ObjectNotFoundError, RangeNotSupportedError
from .models import ObjectHead, PutResult, metadata_to_dict
from .multipart import MultipartUpload
from .planner import TransferPlanner
from .storage import COPY_CHUNK
from sealedstore.security import crypto
from sealedstore.security.cipher_io import CipherIO, SourceReader, iter_decrypt
from sealedstore.security.materials import (
    MaterialsStore,
    build_materials,
    instruction_key,
    unencrypted_hints,
)
from sealedstore.security.signer import UrlSigner


logger = logging.getLogger(__name__)

# marks "use the configured server-side encryption"; None disables it
DEFAULT = object()


def _byte_range(byte_range) -> Optional[Tuple[int, int]]:
    if byte_range is None:
        return None
    if isinstance(byte_range, range):
        if byte_range.step != 1 or len(byte_range) == 0:
            raise ValueError(f"byte range must be a non-empty contiguous range, got {byte_range!r}")
        return byte_range.start, byte_range.stop - 1
    start, end = byte_range
    if start < 0 or end < start:
        raise ValueError(f"invalid byte range: {byte_range!r}")
    return start, end


class ObjectTransfer:
    """Reads and writes objects, optionally encrypted client-side."""

    def __init__(self, client, config: Optional[TransferConfig] = None):
        self.client = client
        self.config = config or TransferConfig()
        self.materials = MaterialsStore(client)
        self.signer = UrlSigner(self.config)

    def _server_side_encryption(self, value) -> Optional[str]:
        return self.config.server_side_encryption if value is DEFAULT else value

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def write(
        self,
        bucket: str,
        key: str,
        data,
        *,
        content_length: Optional[int] = None,
        estimated_content_length: Optional[int] = None,
        single_request: bool = False,
        metadata: Optional[Dict[str, str]] = None,
        content_md5: Optional[str] = None,
        encryption_key=None,
        materials_location=None,
        materials_descriptor: Optional[str] = None,
        server_side_encryption=DEFAULT,
        multipart_threshold: Optional[int] = None,
        multipart_min_part_size: Optional[int] = None,
        multipart_max_parts: Optional[int] = None,
    ) -> PutResult:
        """
        Upload ``data`` (bytes, str, a path or a readable) to ``bucket/key``.

        The length of bytes, str and paths is known; for other readables pass
        ``content_length`` or ``estimated_content_length`` unless
        ``single_request`` is set. With an encryption key (per call or
        configured) the payload is encrypted before it leaves the process and
        ``content_md5`` is recorded as the plaintext checksum hint.
        """
        config = self.config.replace(
            encryption_key=encryption_key,
            materials_location=materials_location,
            materials_descriptor=materials_descriptor,
            multipart_threshold=multipart_threshold,
            multipart_min_part_size=multipart_min_part_size,
            multipart_max_parts=multipart_max_parts,
        )
        sse = self._server_side_encryption(server_side_encryption)
        metadata = metadata_to_dict(metadata)

        source = SourceReader(data)
        try:
            if content_length is None:
                content_length = source.size
            encrypting = config.encryption_key is not None

            # plan on the bytes actually sent, before anything is stored
            sent_length, sent_estimate = content_length, estimated_content_length
            if encrypting:
                if sent_length is not None:
                    sent_length = crypto.encrypted_size(sent_length)
                if sent_estimate is not None:
                    sent_estimate = crypto.encrypted_size(sent_estimate)
            plan = TransferPlanner(config).plan(
                content_length=sent_length,
                estimated_content_length=sent_estimate,
                single_request=single_request,
            )
            logger.debug("writing %s/%s: %r, encrypted=%s", bucket, key, plan, encrypting)

            body = source
            if encrypting:
                body = self._encrypt_source(
                    config, bucket, key, source, content_length, content_md5, metadata
                )

            if plan.multipart:
                return self._write_multipart(bucket, key, body, plan.part_size, metadata, sse)
            return self._write_direct(bucket, key, body, sent_length, metadata, sse)
        finally:
            source.close()

    def _encrypt_source(self, config, bucket, key, source, content_length, content_md5, metadata) -> CipherIO:
        envelope = crypto.generate_envelope(descriptor=config.materials_descriptor)
        wrapped = crypto.wrap(config.encryption_key, envelope)
        self.materials.store(
            build_materials(wrapped, envelope),
            unencrypted_hints(content_length, content_md5),
            config.materials_location,
            bucket,
            key,
            metadata,
        )
        return CipherIO.encrypting(envelope, source, content_length)

    def _write_direct(self, bucket, key, body, content_length, metadata, sse) -> PutResult:
        data = body
        if content_length is None:
            # a single request has to declare its size
            data = body.read()
            content_length = len(data)
        return self.client.put_object(
            bucket=bucket,
            key=key,
            data=data,
            content_length=content_length,
            metadata=metadata,
            server_side_encryption=sse,
        )

    def _write_multipart(self, bucket, key, body, part_size, metadata, sse) -> PutResult:
        with MultipartUpload.create(
            self.client, bucket, key, metadata=metadata, server_side_encryption=sse
        ) as upload:
            while not body.eof():
                upload.add_part(body.read(part_size))

        if upload.result is None:
            # nothing was read, so the upload was aborted; store an empty object
            logger.debug("multipart source for %s/%s was empty, writing empty object", bucket, key)
            return self._write_direct(bucket, key, b"", 0, metadata, sse)
        return upload.result

    def multipart_upload(
        self,
        bucket: str,
        key: str,
        *,
        metadata: Optional[Dict[str, str]] = None,
        server_side_encryption=DEFAULT,
    ) -> MultipartUpload:
        """
        Open a multipart upload for parts supplied by the caller.

        Use it as a context manager so the upload is completed on a clean
        exit and aborted when the block raises::

            with transfer.multipart_upload("bucket", "key") as upload:
                upload.add_part(first, part_number=1)
                upload.add_part(second, part_number=2)
        """
        return MultipartUpload.create(
            self.client,
            bucket,
            key,
            metadata=metadata,
            server_side_encryption=self._server_side_encryption(server_side_encryption),
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _envelope_for(self, master, location, bucket, key, version_id):
        crypto.check_key_material(master, crypto.DECRYPT)
        wrapped, iv, descriptor = self.materials.retrieve(location, bucket, key, version_id)
        return crypto.unwrap(master, wrapped, iv, descriptor)

    def stream(
        self,
        bucket: str,
        key: str,
        *,
        version_id: Optional[str] = None,
        byte_range=None,
        encryption_key=None,
        materials_location=None,
        chunk_size: int = COPY_CHUNK,
    ) -> Iterator[bytes]:
        """
        Iterate over the object's (decrypted) content in chunks.

        ``byte_range`` is an inclusive ``(start, end)`` pair or a ``range``;
        it cannot be combined with client-side decryption. Materials are
        loaded and the data key unwrapped before this returns.
        """
        config = self.config.replace(encryption_key=encryption_key, materials_location=materials_location)
        master = config.encryption_key
        byte_range = _byte_range(byte_range)
        if master is not None and byte_range is not None:
            raise RangeNotSupportedError(
                "cannot read a byte range of a client-side encrypted object"
            )

        envelope = None
        if master is not None:
            envelope = self._envelope_for(master, config.materials_location, bucket, key, version_id)
        return self._iter_body(bucket, key, version_id, byte_range, envelope, chunk_size)

    def _iter_body(self, bucket, key, version_id, byte_range, envelope, chunk_size) -> Iterator[bytes]:
        body = self.client.get_object(
            bucket=bucket, key=key, version_id=version_id, byte_range=byte_range
        )
        try:
            chunks = iter(lambda: body.read(chunk_size), b"")
            if envelope is not None:
                chunks = iter_decrypt(chunks, envelope)
            yield from chunks
        finally:
            body.close()

    def read(
        self,
        bucket: str,
        key: str,
        *,
        version_id: Optional[str] = None,
        byte_range=None,
        encryption_key=None,
        materials_location=None,
    ) -> bytes:
        return b"".join(
            self.stream(
                bucket,
                key,
                version_id=version_id,
                byte_range=byte_range,
                encryption_key=encryption_key,
                materials_location=materials_location,
            )
        )

    # ------------------------------------------------------------------
    # Copy / move / delete
    # ------------------------------------------------------------------

    def copy_from(
        self,
        bucket: str,
        key: str,
        source_bucket: str,
        source_key: str,
        *,
        client_side_encrypted: bool = False,
        metadata: Optional[Dict[str, str]] = None,
        version_id: Optional[str] = None,
        server_side_encryption=DEFAULT,
        content_type: Optional[str] = None,
    ) -> PutResult:
        """
        Copy ``source_bucket/source_key`` to ``bucket/key`` on the server.

        Source metadata is kept unless ``metadata`` or ``content_type`` is
        given, which replace it. For a client-side encrypted source the
        materials are carried over first: metadata fields are merged into
        the replacement metadata, or the instruction file is copied. The
        two copies are independent requests.
        """
        directive = "COPY"
        new_metadata = None

        carried = {}
        if client_side_encrypted:
            carried = self.materials.copy(source_bucket, source_key, bucket, key)

        if metadata is not None or content_type is not None:
            directive = "REPLACE"
            new_metadata = metadata_to_dict(metadata)
            new_metadata.update(carried)

        logger.debug(
            "copying %s/%s -> %s/%s (metadata %s)",
            source_bucket, source_key, bucket, key, directive,
        )
        return self.client.copy_object(
            bucket=bucket,
            key=key,
            source_bucket=source_bucket,
            source_key=source_key,
            version_id=version_id,
            metadata=new_metadata,
            metadata_directive=directive,
            server_side_encryption=self._server_side_encryption(server_side_encryption),
            content_type=content_type,
        )

    def copy_to(self, bucket: str, key: str, target_bucket: str, target_key: str, **options) -> PutResult:
        """Copy ``bucket/key`` to ``target_bucket/target_key``; options as for copy_from."""
        return self.copy_from(target_bucket, target_key, bucket, key, **options)

    def move_to(self, bucket: str, key: str, target_bucket: str, target_key: str, **options) -> PutResult:
        """Copy then delete the source. Not atomic."""
        result = self.copy_to(bucket, key, target_bucket, target_key, **options)
        self.delete(bucket, key)
        return result

    def delete(
        self,
        bucket: str,
        key: str,
        *,
        version_id: Optional[str] = None,
        delete_instruction_file: bool = False,
    ) -> None:
        self.client.delete_object(bucket=bucket, key=key, version_id=version_id)
        if delete_instruction_file:
            logger.debug("deleting instruction file %s/%s", bucket, instruction_key(key))
            self.materials.delete_instruction(bucket, key)

    # ------------------------------------------------------------------
    # Inspection and URLs
    # ------------------------------------------------------------------

    def head(self, bucket: str, key: str, *, version_id: Optional[str] = None) -> ObjectHead:
        return self.client.head_object(bucket=bucket, key=key, version_id=version_id)

    def exists(self, bucket: str, key: str) -> bool:
        try:
            self.head(bucket, key)
        except ObjectNotFoundError:
            return False
        return True

    def url_for(self, bucket: str, key: str, method="GET", **options) -> str:
        """Presigned URL; see UrlSigner.url_for for ``options``."""
        return self.signer.url_for(bucket, key, method=method, **options)

    def public_url(self, bucket: str, key: str, secure: Optional[bool] = None) -> str:
        return self.signer.public_url(bucket, key, secure=secure)
