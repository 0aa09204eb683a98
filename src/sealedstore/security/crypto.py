"""Envelope encryption: per-object data keys wrapped under a master key.

Payload cipher: AES-CBC with PKCS7 padding, one random key + IV per object.

Wrapping the data key:
- symmetric master key: RFC 3394 AES key wrap. The data key is block aligned
  so no padding is involved, and the wrap carries an integrity register so
  unwrapping with the wrong master key always fails.
  This is not read-compatible with clients that store an AES-ECB encrypted
  data key under the same `x-amz-key` header; such keys are rejected as a
  key mismatch.
- asymmetric master key: RSA-OAEP (MGF1/SHA-256) with the public key. The
  padding is randomized, so wrapping the same key twice never gives the same
  bytes.

The IV is not secret and is stored base64 encoded next to the wrapped key.
"""
from __future__ import annotations

import os

from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.asymmetric import padding as asym_padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.keywrap import (
    InvalidUnwrap,
    aes_key_unwrap,
    aes_key_wrap,
)

from sealedstore.core.exceptions import InvalidKeyMaterialError, KeyMismatchError
from sealedstore.core.models import (
    AES_KEY_SIZES,
    CipherSpec,
    EncryptionEnvelope,
    KeyKind,
)


AES_256_CBC = CipherSpec("AES-256-CBC", key_size=32)
BLOCK_SIZE = 16

ENCRYPT = "encrypt"
DECRYPT = "decrypt"


def _oaep() -> asym_padding.OAEP:
    return asym_padding.OAEP(
        mgf=asym_padding.MGF1(algorithm=hashes.SHA256()),
        algorithm=hashes.SHA256(),
        label=None,
    )


def generate_envelope(cipher_spec: CipherSpec = AES_256_CBC, descriptor: str = "{}") -> EncryptionEnvelope:
    return EncryptionEnvelope(
        data_key=os.urandom(cipher_spec.key_size),
        iv=os.urandom(cipher_spec.iv_size),
        materials_descriptor=descriptor,
    )


def check_key_material(master, purpose: str = ENCRYPT) -> None:
    """Reject unusable master keys before any request is made."""
    kind = getattr(master, "kind", None)
    if kind is KeyKind.SYMMETRIC:
        if len(master.key) not in AES_KEY_SIZES:
            raise InvalidKeyMaterialError(
                f"symmetric master key must be 16, 24 or 32 bytes, got {len(master.key)}"
            )
    elif kind is KeyKind.ASYMMETRIC:
        if purpose == DECRYPT and master.private_key is None:
            raise InvalidKeyMaterialError("decryption requires the RSA private key")
    else:
        raise InvalidKeyMaterialError(
            f"unsupported master key type: {type(master).__name__}"
        )


# -- symmetric strategy ------------------------------------------------------

def _wrap_symmetric(master, data_key: bytes) -> bytes:
    return aes_key_wrap(master.key, data_key)


def _unwrap_symmetric(master, wrapped: bytes) -> bytes:
    return aes_key_unwrap(master.key, wrapped)


# -- asymmetric strategy -----------------------------------------------------

def _wrap_asymmetric(master, data_key: bytes) -> bytes:
    return master.public_key.encrypt(data_key, _oaep())


def _unwrap_asymmetric(master, wrapped: bytes) -> bytes:
    return master.private_key.decrypt(wrapped, _oaep())


_WRAP = {
    KeyKind.SYMMETRIC: _wrap_symmetric,
    KeyKind.ASYMMETRIC: _wrap_asymmetric,
}

_UNWRAP = {
    KeyKind.SYMMETRIC: _unwrap_symmetric,
    KeyKind.ASYMMETRIC: _unwrap_asymmetric,
}


def wrap(master, envelope: EncryptionEnvelope) -> bytes:
    """Encrypt the envelope's data key under ``master``."""
    check_key_material(master, ENCRYPT)
    return _WRAP[master.kind](master, envelope.data_key)


def unwrap(master, wrapped: bytes, iv: bytes, descriptor: str = "{}") -> EncryptionEnvelope:
    """Recover the envelope from a wrapped data key.

    Raises KeyMismatchError when ``master`` is not the key the data key was
    wrapped with.
    """
    check_key_material(master, DECRYPT)
    try:
        data_key = _UNWRAP[master.kind](master, wrapped)
    except (InvalidUnwrap, ValueError) as e:
        raise KeyMismatchError(
            "master key used to decrypt the data key is not correct"
        ) from e
    if len(data_key) not in AES_KEY_SIZES:
        raise KeyMismatchError(
            f"unwrapped data key has invalid length {len(data_key)}; wrong master key"
        )
    return EncryptionEnvelope(data_key=data_key, iv=iv, materials_descriptor=descriptor)


class _PaddedEncryptor:
    # CBC encryptor that PKCS7-pads on finalize

    def __init__(self, envelope: EncryptionEnvelope):
        cipher = Cipher(algorithms.AES(envelope.data_key), modes.CBC(envelope.iv))
        self._ctx = cipher.encryptor()
        self._padder = padding.PKCS7(BLOCK_SIZE * 8).padder()

    def update(self, data: bytes) -> bytes:
        return self._ctx.update(self._padder.update(data))

    def finalize(self) -> bytes:
        return self._ctx.update(self._padder.finalize()) + self._ctx.finalize()


class _PaddedDecryptor:
    # CBC decryptor that strips PKCS7 padding on finalize

    def __init__(self, envelope: EncryptionEnvelope):
        cipher = Cipher(algorithms.AES(envelope.data_key), modes.CBC(envelope.iv))
        self._ctx = cipher.decryptor()
        self._unpadder = padding.PKCS7(BLOCK_SIZE * 8).unpadder()

    def update(self, data: bytes) -> bytes:
        return self._unpadder.update(self._ctx.update(data))

    def finalize(self) -> bytes:
        return self._unpadder.update(self._ctx.finalize()) + self._unpadder.finalize()


def encryptor(envelope: EncryptionEnvelope) -> _PaddedEncryptor:
    return _PaddedEncryptor(envelope)


def decryptor(envelope: EncryptionEnvelope) -> _PaddedDecryptor:
    return _PaddedDecryptor(envelope)


def encrypt_bytes(data: bytes, envelope: EncryptionEnvelope) -> bytes:
    ctx = encryptor(envelope)
    return ctx.update(data) + ctx.finalize()


def decrypt_bytes(data: bytes, envelope: EncryptionEnvelope) -> bytes:
    ctx = decryptor(envelope)
    return ctx.update(data) + ctx.finalize()


def encrypted_size(plaintext_length: int, block_size: int = BLOCK_SIZE) -> int:
    """Ciphertext length for ``plaintext_length`` bytes.

    PKCS7 always appends padding, so an exact multiple of the block size
    still grows by one full block.
    """
    if plaintext_length < 0:
        raise ValueError("plaintext length must be non-negative")
    return (plaintext_length // block_size) * block_size + block_size
