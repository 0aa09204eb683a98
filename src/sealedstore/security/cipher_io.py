"""Streaming cipher adapter.

``CipherIO`` decorates a readable source and runs every chunk it pulls through
a cipher transform, so a payload is encrypted (or decrypted) on the fly while
an upload loop reads it. Nothing is buffered beyond the current request plus
at most one cipher block.

Consumers drive the stream by polling ``eof()`` and calling ``read(n)``::

    while not body.eof():
        client.upload_part(upload_id, n, body.read(part_size))
"""
from __future__ import annotations

import io
import os
from pathlib import Path
from typing import BinaryIO, Iterable, Iterator, Optional

from sealedstore.core.models import EncryptionEnvelope
from .crypto import decryptor, encrypted_size, encryptor


def _to_bytes(chunk) -> bytes:
    if isinstance(chunk, str):
        return chunk.encode("utf-8")
    return bytes(chunk)


class SourceReader:
    """Uniform pull interface over bytes, text, paths and file objects.

    ``eof()`` answers without consuming data: for plain file objects it reads
    one byte ahead and keeps it for the next ``read``.
    """

    def __init__(self, source):
        self._owned = False
        self.size: Optional[int] = None
        if isinstance(source, (bytes, bytearray, memoryview)):
            data = bytes(source)
            self.size = len(data)
            self._source: BinaryIO = io.BytesIO(data)
        elif isinstance(source, str):
            data = source.encode("utf-8")
            self.size = len(data)
            self._source = io.BytesIO(data)
        elif isinstance(source, (Path, os.PathLike)):
            path = Path(source).expanduser()
            self.size = path.stat().st_size
            self._source = open(path, "rb")
            self._owned = True
        elif hasattr(source, "read"):
            self._source = source
        else:
            raise TypeError(
                "data must be bytes, str, a path or a readable object, "
                f"got {type(source).__name__}"
            )
        self._peek = b""
        self._exhausted = False

    def read(self, size: int = -1) -> bytes:
        if size is None or size < 0:
            data = self._peek + _to_bytes(self._source.read())
            self._peek = b""
            self._exhausted = True
            return data
        if size == 0:
            return b""

        data = self._peek
        self._peek = b""
        while len(data) < size and not self._exhausted:
            chunk = self._source.read(size - len(data))
            if not chunk:
                self._exhausted = True
                break
            data += _to_bytes(chunk)
        return data

    def eof(self) -> bool:
        if self._peek:
            return False
        if self._exhausted:
            return True
        self._peek = _to_bytes(self._source.read(1))
        if not self._peek:
            self._exhausted = True
        return self._exhausted

    def close(self) -> None:
        if self._owned:
            self._source.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


class CipherIO:
    """Readable stream that transforms its source through a cipher.

    ``read(n)`` returns at most ``n`` bytes; the cipher may hold back up to a
    block, so the amount returned need not match what was pulled from the
    source. End-of-stream is reported only after the cipher's final block has
    been handed out.
    """

    def __init__(self, transform, source, content_length: Optional[int] = None):
        self._transform = transform
        self._source = source if isinstance(source, SourceReader) else SourceReader(source)
        self._buffer = bytearray()
        self._finalized = False
        # length of the *output* stream when it is known up front
        self.content_length = content_length

    @classmethod
    def encrypting(cls, envelope: EncryptionEnvelope, source, content_length: Optional[int] = None) -> "CipherIO":
        """Encrypt ``source``; a known plaintext length gives a known ciphertext length."""
        size = encrypted_size(content_length) if content_length is not None else None
        return cls(encryptor(envelope), source, size)

    @classmethod
    def decrypting(cls, envelope: EncryptionEnvelope, source) -> "CipherIO":
        return cls(decryptor(envelope), source)

    def _fill(self, size: int) -> None:
        while len(self._buffer) < size and not self._finalized:
            if self._source.eof():
                self._buffer += self._transform.finalize()
                self._finalized = True
            else:
                self._buffer += self._transform.update(self._source.read(size))

    def read(self, size: int = -1) -> bytes:
        if size is None or size < 0:
            while not self._finalized:
                self._fill(len(self._buffer) + io.DEFAULT_BUFFER_SIZE)
            data = bytes(self._buffer)
            self._buffer.clear()
            return data

        self._fill(size)
        data = bytes(self._buffer[:size])
        del self._buffer[:size]
        return data

    def eof(self) -> bool:
        return self._finalized and not self._buffer

    def close(self) -> None:
        self._source.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


def iter_decrypt(chunks: Iterable[bytes], envelope: EncryptionEnvelope) -> Iterator[bytes]:
    """Decrypt a stream of ciphertext chunks, yielding plaintext as it is produced.

    The chunks must be the complete ciphertext from its first byte; CBC
    cannot start decrypting in the middle.
    """
    ctx = decryptor(envelope)
    for chunk in chunks:
        out = ctx.update(chunk)
        if out:
            yield out
    tail = ctx.finalize()
    if tail:
        yield tail
