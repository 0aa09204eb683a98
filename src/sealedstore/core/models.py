"""
Base data models for key material, envelopes and transfers
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from .exceptions import InvalidKeyMaterialError, InvalidMaterialsLocationError


AES_KEY_SIZES = (16, 24, 32)


class KeyKind(Enum):
    # Tag for the KeyMaterial union; selects the wrap/unwrap strategy
    SYMMETRIC = "symmetric"
    ASYMMETRIC = "asymmetric"


class MaterialsLocation(Enum):
    # Where the wrapped envelope key and IV live for an object
    METADATA = "metadata"
    INSTRUCTION_FILE = "instruction_file"

    @classmethod
    def parse(cls, value) -> "MaterialsLocation":
        """Accept an enum member or its string value."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise InvalidMaterialsLocationError(
                "invalid materials location, expected 'metadata' or "
                f"'instruction_file', got: {value!r}"
            ) from None


class TransferMode(Enum):
    DIRECT = "direct"
    MULTIPART = "multipart"


class MultipartState(Enum):
    # Lifecycle of a multipart upload; COMPLETED and ABORTED are terminal
    OPEN = "open"
    ADDING = "adding"
    COMPLETING = "completing"
    COMPLETED = "completed"
    ABORTING = "aborting"
    ABORTED = "aborted"

    @property
    def terminal(self) -> bool:
        return self in (MultipartState.COMPLETED, MultipartState.ABORTED)


class SymmetricKey:
    """
        AES master key (128, 192 or 256 bit)
    """

    __slots__ = ("key",)

    kind = KeyKind.SYMMETRIC

    def __init__(self, key: bytes):
        if not isinstance(key, (bytes, bytearray)):
            raise InvalidKeyMaterialError("symmetric master key must be bytes")
        if len(key) not in AES_KEY_SIZES:
            raise InvalidKeyMaterialError(
                f"symmetric master key must be 16, 24 or 32 bytes, got {len(key)}"
            )
        self.key = bytes(key)

    def __eq__(self, other):
        if not isinstance(other, SymmetricKey):
            return NotImplemented
        return self.key == other.key

    def __hash__(self):
        return hash(self.key)

    def __repr__(self):
        # never print key bytes
        return f"SymmetricKey(bits={len(self.key) * 8})"


class AsymmetricKey:
    """
        RSA master key pair. The private half is optional: a writer only
        needs the public key, a reader needs the private key.
    """

    __slots__ = ("public_key", "private_key")

    kind = KeyKind.ASYMMETRIC

    def __init__(
        self,
        public_key: rsa.RSAPublicKey,
        private_key: Optional[rsa.RSAPrivateKey] = None,
    ):
        if not isinstance(public_key, rsa.RSAPublicKey):
            raise InvalidKeyMaterialError("asymmetric master key must be an RSA key")
        if private_key is not None and not isinstance(private_key, rsa.RSAPrivateKey):
            raise InvalidKeyMaterialError("private key must be an RSA private key")
        self.public_key = public_key
        self.private_key = private_key

    @classmethod
    def from_private_key(cls, private_key: rsa.RSAPrivateKey) -> "AsymmetricKey":
        if not isinstance(private_key, rsa.RSAPrivateKey):
            raise InvalidKeyMaterialError("private key must be an RSA private key")
        return cls(private_key.public_key(), private_key)

    @classmethod
    def from_pem(cls, data: bytes, password: Optional[bytes] = None) -> "AsymmetricKey":
        """Load a PEM encoded RSA private key (full pair) or public key."""
        if isinstance(data, str):
            data = data.encode("ascii")
        try:
            if b"PRIVATE KEY" in data:
                key = serialization.load_pem_private_key(data, password=password)
                return cls.from_private_key(key)
            key = serialization.load_pem_public_key(data)
        except ValueError as e:
            raise InvalidKeyMaterialError(f"could not load PEM key: {e}") from e
        return cls(key)

    @property
    def has_private_key(self) -> bool:
        return self.private_key is not None

    def __repr__(self):
        return (
            f"AsymmetricKey(bits={self.public_key.key_size}, "
            f"private={self.has_private_key})"
        )


def key_material(value) -> SymmetricKey | AsymmetricKey:
    """
        Coerce caller input into KeyMaterial.

        Raw bytes become a SymmetricKey, RSA key objects become an
        AsymmetricKey. Existing KeyMaterial is returned unchanged.
    """
    if isinstance(value, (SymmetricKey, AsymmetricKey)):
        return value
    if isinstance(value, (bytes, bytearray)):
        return SymmetricKey(bytes(value))
    if isinstance(value, rsa.RSAPrivateKey):
        return AsymmetricKey.from_private_key(value)
    if isinstance(value, rsa.RSAPublicKey):
        return AsymmetricKey(value)
    raise InvalidKeyMaterialError(
        f"unsupported encryption key type: {type(value).__name__}"
    )


class CipherSpec:
    """
        Block cipher parameters used to size envelope keys and IVs
    """

    __slots__ = ("name", "key_size", "block_size", "iv_size")

    def __init__(self, name: str, key_size: int, block_size: int = 16, iv_size: int = 16):
        if key_size not in AES_KEY_SIZES:
            raise InvalidKeyMaterialError(f"unsupported AES key size: {key_size}")
        self.name = name
        self.key_size = key_size
        self.block_size = block_size
        self.iv_size = iv_size

    def __repr__(self):
        return f"CipherSpec({self.name!r})"


@dataclass(frozen=True, repr=False)
class EncryptionEnvelope:
    """
        Per-object data key, IV and materials description
    """

    data_key: bytes
    iv: bytes
    materials_descriptor: str = "{}"

    def __repr__(self):
        return (
            f"EncryptionEnvelope(key_bits={len(self.data_key) * 8}, "
            f"materials_descriptor={self.materials_descriptor!r})"
        )


class TransferPlan:
    """
        Result of the single-vs-multipart decision (never persisted)
    """

    __slots__ = ("mode", "part_size")

    def __init__(self, mode: TransferMode, part_size: Optional[int] = None):
        self.mode = mode
        self.part_size = part_size

    @property
    def multipart(self) -> bool:
        return self.mode is TransferMode.MULTIPART

    def __eq__(self, other):
        if not isinstance(other, TransferPlan):
            return NotImplemented
        return self.mode == other.mode and self.part_size == other.part_size

    def __repr__(self):
        return f"TransferPlan(mode={self.mode.value}, part_size={self.part_size})"


class Part:
    """
        One uploaded chunk of a multipart upload
    """

    __slots__ = ("number", "etag", "size")

    def __init__(self, number: int, etag: str, size: int):
        self.number = number
        self.etag = etag
        self.size = size

    def __repr__(self):
        return f"Part(number={self.number}, etag={self.etag!r}, size={self.size})"


@dataclass(frozen=True)
class CompletedPart:
    """Part record handed to the storage client when completing an upload."""

    part_number: int
    etag: str


@dataclass(frozen=True)
class PutResult:
    """Result of a put, copy or multipart completion."""

    etag: Optional[str]
    version_id: Optional[str] = None


@dataclass(frozen=True)
class ObjectHead:
    """Metadata from a HEAD object request."""

    content_length: int
    etag: Optional[str]
    metadata: Dict[str, str] = field(default_factory=dict)
    version_id: Optional[str] = None
    content_type: Optional[str] = None
    server_side_encryption: Optional[str] = None


@dataclass(frozen=True)
class Credentials:
    """Access key pair plus an optional session token."""

    access_key_id: str
    secret_access_key: str
    session_token: Optional[str] = None

    def __repr__(self):
        return f"Credentials(access_key_id={self.access_key_id!r})"


def metadata_to_dict(metadata: Optional[Dict[str, Any]]) -> Dict[str, str]:
    """Object metadata values are always strings on the wire."""
    return {str(k): str(v) for k, v in (metadata or {}).items()}
