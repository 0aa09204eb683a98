"""Security helpers: envelope encryption primitives for sealedstore.

This package provides:
- per-object data key generation and wrapping under a master key
- streaming AES-CBC encryption/decryption of upload and download bodies
- persistence of wrapped key materials (object metadata or instruction file)
- presigned URL signing
- Argon2id master key derivation and OS keystore storage
"""

from .kdf import generate_salt, derive_master_key, derive_symmetric_key
from .crypto import (
    generate_envelope,
    wrap,
    unwrap,
    encrypt_bytes,
    decrypt_bytes,
    encrypted_size,
)
from .cipher_io import CipherIO, SourceReader, iter_decrypt
from .materials import MaterialsStore
from .signer import UrlSigner, sign
from .keystore import save_key_material, load_key_material, delete_key_material

__all__ = [
    "generate_salt",
    "derive_master_key",
    "derive_symmetric_key",
    "generate_envelope",
    "wrap",
    "unwrap",
    "encrypt_bytes",
    "decrypt_bytes",
    "encrypted_size",
    "CipherIO",
    "SourceReader",
    "iter_decrypt",
    "MaterialsStore",
    "UrlSigner",
    "sign",
    "save_key_material",
    "load_key_material",
    "delete_key_material",
]
