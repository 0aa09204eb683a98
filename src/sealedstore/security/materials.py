"""
Persistence of envelope encryption materials.

Materials for an object are three string fields:

    x-amz-key       base64 wrapped data key
    x-amz-iv        base64 IV
    x-amz-matdesc   materials description (JSON string, "{}" by default)

They are stored either in the object's own metadata or as a JSON document in
a sibling object named ``<key>.instruction``. The reader has to be told which
location was used; nothing probes both.

The instruction file is written with its own put request. It is not atomic
with the data write: if one succeeds and the other fails, both objects need
to be cleaned up by the caller.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
from typing import Any, Dict, Optional, Tuple

from sealedstore.core.exceptions import MaterialsNotFoundError
from sealedstore.core.models import EncryptionEnvelope, MaterialsLocation


logger = logging.getLogger(__name__)

KEY_FIELD = "x-amz-key"
IV_FIELD = "x-amz-iv"
MATDESC_FIELD = "x-amz-matdesc"
UNENCRYPTED_LENGTH_FIELD = "x-amz-unencrypted-content-length"
UNENCRYPTED_MD5_FIELD = "x-amz-unencrypted-content-md5"
INSTRUCTION_MARKER = "x-amz-crypto-instr-file"

MATERIAL_FIELDS = (KEY_FIELD, IV_FIELD, MATDESC_FIELD)
HINT_FIELDS = (UNENCRYPTED_LENGTH_FIELD, UNENCRYPTED_MD5_FIELD)

INSTRUCTION_SUFFIX = ".instruction"


def instruction_key(key: str) -> str:
    return key + INSTRUCTION_SUFFIX


def build_materials(wrapped_key: bytes, envelope: EncryptionEnvelope) -> Dict[str, str]:
    return {
        KEY_FIELD: base64.b64encode(wrapped_key).decode("ascii"),
        IV_FIELD: base64.b64encode(envelope.iv).decode("ascii"),
        MATDESC_FIELD: envelope.materials_descriptor,
    }


def unencrypted_hints(content_length: Optional[int] = None, content_md5: Optional[str] = None) -> Dict[str, str]:
    hints = {}
    if content_length is not None:
        hints[UNENCRYPTED_LENGTH_FIELD] = str(content_length)
    if content_md5:
        hints[UNENCRYPTED_MD5_FIELD] = content_md5
    return hints


def _decode(value: str, field: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError, TypeError) as e:
        raise MaterialsNotFoundError(f"encryption material {field} is not valid base64") from e


class MaterialsStore:
    """Stores and loads wrapped envelope keys through a storage client."""

    def __init__(self, client):
        self.client = client

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    def store(
        self,
        materials: Dict[str, str],
        hints: Dict[str, str],
        location,
        bucket: str,
        key: str,
        metadata: Dict[str, Any],
    ) -> None:
        """
        Persist ``materials`` for ``bucket/key``.

        ``metadata`` is the outgoing metadata of the data write and is
        updated in place: the unencrypted length/MD5 hints always go there;
        for METADATA the materials go there too. For INSTRUCTION_FILE a
        separate ``<key>.instruction`` object is written immediately.
        """
        location = MaterialsLocation.parse(location)
        metadata.update(hints)

        if location is MaterialsLocation.METADATA:
            metadata.update(materials)
            return

        document = json.dumps(materials).encode("utf-8")
        inst_metadata = {INSTRUCTION_MARKER: ""}
        inst_metadata.update(hints)
        logger.debug("writing instruction file %s/%s", bucket, instruction_key(key))
        self.client.put_object(
            bucket=bucket,
            key=instruction_key(key),
            data=document,
            content_length=len(document),
            metadata=inst_metadata,
        )

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    def _metadata_materials(self, bucket: str, key: str, version_id: Optional[str]) -> Dict[str, Any]:
        head = self.client.head_object(bucket=bucket, key=key, version_id=version_id)
        return dict(head.metadata or {})

    def _instruction_materials(self, bucket: str, key: str) -> Dict[str, Any]:
        body = self.client.get_object(bucket=bucket, key=instruction_key(key))
        try:
            raw = body.read()
        finally:
            close = getattr(body, "close", None)
            if close is not None:
                close()
        try:
            document = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise MaterialsNotFoundError(
                f"instruction file for {bucket}/{key} is not valid JSON"
            ) from e
        if not isinstance(document, dict):
            raise MaterialsNotFoundError(
                f"instruction file for {bucket}/{key} is not a JSON object"
            )
        return document

    def retrieve(
        self,
        location,
        bucket: str,
        key: str,
        version_id: Optional[str] = None,
    ) -> Tuple[bytes, bytes, str]:
        """
        Load ``(wrapped_key, iv, materials_descriptor)`` from ``location``.

        Raises MaterialsNotFoundError when the wrapped key or IV is missing.
        """
        location = MaterialsLocation.parse(location)
        if location is MaterialsLocation.METADATA:
            found = self._metadata_materials(bucket, key, version_id)
        else:
            found = self._instruction_materials(bucket, key)

        wrapped_key = found.get(KEY_FIELD)
        iv = found.get(IV_FIELD)
        if not wrapped_key or not iv:
            raise MaterialsNotFoundError(
                f"no encryption materials found in {location.value} for "
                f"{bucket}/{key}, unable to decrypt"
            )
        descriptor = found.get(MATDESC_FIELD) or "{}"
        return _decode(wrapped_key, KEY_FIELD), _decode(iv, IV_FIELD), descriptor

    # ------------------------------------------------------------------
    # Copy / delete
    # ------------------------------------------------------------------

    def copy(self, source_bucket: str, source_key: str, dest_bucket: str, dest_key: str) -> Dict[str, str]:
        """
        Carry encryption materials over to a copy of an encrypted object.

        Returns the material and hint fields found in the source metadata so
        the caller can merge them into the copy's metadata. When any of the
        three material fields is absent, the source instruction file is
        copied next to the destination instead. There is no rollback if the
        data copy that follows fails.
        """
        meta = self._metadata_materials(source_bucket, source_key, None)
        carried = {
            name: str(meta[name])
            for name in MATERIAL_FIELDS + HINT_FIELDS
            if meta.get(name)
        }
        if not all(carried.get(name) for name in MATERIAL_FIELDS):
            logger.debug(
                "copying instruction file %s/%s -> %s/%s",
                source_bucket, instruction_key(source_key),
                dest_bucket, instruction_key(dest_key),
            )
            self.client.copy_object(
                bucket=dest_bucket,
                key=instruction_key(dest_key),
                source_bucket=source_bucket,
                source_key=instruction_key(source_key),
            )
        return carried

    def delete_instruction(self, bucket: str, key: str) -> None:
        self.client.delete_object(bucket=bucket, key=instruction_key(key))
