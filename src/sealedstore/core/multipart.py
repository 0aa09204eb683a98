"""
Multipart upload sessions.

A MultipartUpload moves through

    OPEN -> ADDING* -> COMPLETING -> COMPLETED
                    -> ABORTING   -> ABORTED

and nothing but ``abort()`` (a no-op) is accepted once it is COMPLETED or
ABORTED. Used as a context manager it is always finished: a clean exit
closes it, an exception aborts it and the exception propagates.

If that abort fails too, the original exception is still the one raised.
The abort failure is logged, kept on ``abort_error`` and attached to the
original exception as a note.

An upload is owned by a single caller; it does no locking of its own.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from .exceptions import MultipartStateError
from .models import CompletedPart, MultipartState, Part, PutResult, metadata_to_dict


logger = logging.getLogger(__name__)

MAX_PART_NUMBER = 10000


class MultipartUpload:
    """Client-side handle for one server-side multipart upload."""

    def __init__(self, client, bucket: str, key: str, upload_id: str):
        self.client = client
        self.bucket = bucket
        self.key = key
        self.upload_id = upload_id
        self.state = MultipartState.OPEN
        self.result: Optional[PutResult] = None
        self.abort_error: Optional[BaseException] = None
        self._parts: Dict[int, Part] = {}

    @classmethod
    def create(
        cls,
        client,
        bucket: str,
        key: str,
        metadata: Optional[dict] = None,
        server_side_encryption: Optional[str] = None,
    ) -> "MultipartUpload":
        upload_id = client.create_multipart(
            bucket=bucket,
            key=key,
            metadata=metadata_to_dict(metadata),
            server_side_encryption=server_side_encryption,
        )
        logger.debug("opened multipart upload %s for %s/%s", upload_id, bucket, key)
        return cls(client, bucket, key, upload_id)

    @property
    def parts(self) -> List[Part]:
        """Uploaded parts in assembly order."""
        return [self._parts[n] for n in sorted(self._parts)]

    def _require_open(self, action: str) -> None:
        if self.state.terminal or self.state is MultipartState.ABORTING:
            raise MultipartStateError(
                f"cannot {action} multipart upload {self.upload_id}: it is {self.state.value}"
            )

    def add_part(self, data, part_number: Optional[int] = None) -> Part:
        """
        Upload one part and return its record.

        Without ``part_number`` the next number after the highest one used so
        far is taken (1 for the first part). Re-using a number replaces that
        part; the store assembles parts by number, not upload order.
        """
        self._require_open("add a part to")
        if part_number is None:
            part_number = max(self._parts, default=0) + 1
        if isinstance(part_number, bool) or not isinstance(part_number, int) \
                or not 1 <= part_number <= MAX_PART_NUMBER:
            raise ValueError(f"part number must be an integer in 1..{MAX_PART_NUMBER}, got {part_number!r}")

        if hasattr(data, "read"):
            data = data.read()
        data = bytes(data)

        self.state = MultipartState.ADDING
        etag = self.client.upload_part(self.upload_id, part_number, data)
        part = Part(part_number, etag, len(data))
        self._parts[part_number] = part
        logger.debug("uploaded part %d (%d bytes) of %s", part_number, len(data), self.upload_id)
        return part

    def complete(self) -> PutResult:
        self._require_open("complete")
        if not self._parts:
            raise MultipartStateError(f"multipart upload {self.upload_id} has no parts to complete")
        self.state = MultipartState.COMPLETING
        completed = [CompletedPart(part_number=p.number, etag=p.etag) for p in self.parts]
        self.result = self.client.complete_multipart(self.upload_id, completed)
        self.state = MultipartState.COMPLETED
        logger.debug("completed multipart upload %s with %d parts", self.upload_id, len(completed))
        return self.result

    def close(self) -> Optional[PutResult]:
        """Complete the upload, or abort it when no part was ever added."""
        self._require_open("close")
        if not self._parts:
            self.abort()
            return None
        return self.complete()

    def abort(self) -> None:
        if self.state.terminal:
            return
        self.state = MultipartState.ABORTING
        self.client.abort_multipart(self.upload_id)
        self.state = MultipartState.ABORTED
        logger.debug("aborted multipart upload %s", self.upload_id)

    def _abort_after(self, error: BaseException) -> None:
        if self.state.terminal:
            return
        logger.warning("aborting multipart upload %s after error: %r", self.upload_id, error)
        try:
            self.abort()
        except Exception as abort_error:
            self.abort_error = abort_error
            logger.error("abort of multipart upload %s failed: %r", self.upload_id, abort_error)
            error.add_note(f"abort of multipart upload {self.upload_id} also failed: {abort_error!r}")

    def __enter__(self) -> "MultipartUpload":
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc is not None:
            self._abort_after(exc)
            return False
        if self.state.terminal:
            # finished explicitly inside the block
            return False
        try:
            self.close()
        except Exception as close_error:
            self._abort_after(close_error)
            raise
        return False

    def __repr__(self):
        return (
            f"MultipartUpload(bucket={self.bucket!r}, key={self.key!r}, "
            f"upload_id={self.upload_id!r}, state={self.state.value})"
        )
