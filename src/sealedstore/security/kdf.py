import os

from argon2.low_level import Type, hash_secret_raw

from sealedstore.core.models import SymmetricKey


def generate_salt(length: int = 16) -> bytes:
    """Return a cryptographically secure random salt."""
    return os.urandom(length)


def derive_master_key(
    password: bytes,
    salt: bytes,
    time_cost: int = 3,
    memory_cost: int = 65536,
    parallelism: int = 1,
    key_len: int = 32,
) -> bytes:
    """
    Derive raw master key bytes from a password using Argon2id.
    """
    if isinstance(password, str):
        password = password.encode("utf-8")

    return hash_secret_raw(
        secret=password,
        salt=salt,
        time_cost=time_cost,
        memory_cost=memory_cost,
        parallelism=parallelism,
        hash_len=key_len,
        type=Type.ID,
    )


def derive_symmetric_key(password, salt: bytes, key_size: int = 32, **params) -> SymmetricKey:
    """Password-derived AES master key; same password and salt give the same key."""
    return SymmetricKey(derive_master_key(password, salt, key_len=key_size, **params))

