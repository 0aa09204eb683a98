"""Transfer configuration.

A ``TransferConfig`` is an immutable value handed to every service that needs
defaults. Per-call options override it through :meth:`TransferConfig.replace`;
there is no process-wide default.

``TransferConfig.from_env`` reads ``SEALEDSTORE_*`` variables. The default
client-side master key can come from, in order:

- ``SEALEDSTORE_ENCRYPTION_KEY``: base64 AES key
- ``SEALEDSTORE_MASTER_PASSWORD`` + ``SEALEDSTORE_MASTER_SALT`` (hex): Argon2id
- ``SEALEDSTORE_KEYRING_SERVICE`` + ``SEALEDSTORE_KEYRING_ACCOUNT``: OS keystore
"""

from __future__ import annotations

import base64
import binascii
import dataclasses
import logging
import os
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from .exceptions import InvalidKeyMaterialError
from .models import Credentials, MaterialsLocation, SymmetricKey, key_material
from sealedstore.security.kdf import derive_symmetric_key
from sealedstore.security.keystore import assess_keyring_backend, load_key_material


logger = logging.getLogger(__name__)

MB = 1024 * 1024

DEFAULT_MULTIPART_THRESHOLD = 16 * MB
DEFAULT_MIN_PART_SIZE = 5 * MB
DEFAULT_MAX_PARTS = 10000
DEFAULT_ENDPOINT = "s3.amazonaws.com"

ENV_PREFIX = "SEALEDSTORE_"

_TRUE = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class TransferConfig:
    """Read-only defaults shared by concurrent object operations."""

    multipart_threshold: int = DEFAULT_MULTIPART_THRESHOLD
    multipart_min_part_size: int = DEFAULT_MIN_PART_SIZE
    multipart_max_parts: int = DEFAULT_MAX_PARTS
    server_side_encryption: Optional[str] = None
    encryption_key: Any = None
    materials_location: MaterialsLocation = MaterialsLocation.METADATA
    materials_descriptor: str = "{}"
    credentials: Optional[Credentials] = None
    endpoint: str = DEFAULT_ENDPOINT
    port: Optional[int] = None
    use_ssl: bool = True
    force_path_style: bool = False

    def __post_init__(self):
        # frozen: normalize through object.__setattr__
        object.__setattr__(self, "materials_location", MaterialsLocation.parse(self.materials_location))
        if self.encryption_key is not None:
            object.__setattr__(self, "encryption_key", key_material(self.encryption_key))
        if self.multipart_threshold < 0:
            raise ValueError("multipart_threshold must be non-negative")
        if self.multipart_min_part_size <= 0:
            raise ValueError("multipart_min_part_size must be positive")
        if not 1 <= self.multipart_max_parts <= DEFAULT_MAX_PARTS:
            raise ValueError(f"multipart_max_parts must be between 1 and {DEFAULT_MAX_PARTS}")

    def replace(self, **overrides) -> "TransferConfig":
        """Copy with the given fields changed; ``None`` values are ignored."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        if not changes:
            return self
        return dataclasses.replace(self, **changes)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "TransferConfig":
        env = os.environ if environ is None else environ

        def get(name: str) -> Optional[str]:
            value = env.get(ENV_PREFIX + name)
            return value if value not in (None, "") else None

        kwargs: dict[str, Any] = {}
        for field_name, var in (
            ("multipart_threshold", "MULTIPART_THRESHOLD"),
            ("multipart_min_part_size", "MULTIPART_MIN_PART_SIZE"),
            ("multipart_max_parts", "MULTIPART_MAX_PARTS"),
            ("port", "PORT"),
        ):
            if get(var) is not None:
                kwargs[field_name] = int(get(var))

        for field_name, var in (
            ("server_side_encryption", "SERVER_SIDE_ENCRYPTION"),
            ("materials_location", "MATERIALS_LOCATION"),
            ("materials_descriptor", "MATERIALS_DESCRIPTOR"),
            ("endpoint", "ENDPOINT"),
        ):
            if get(var) is not None:
                kwargs[field_name] = get(var)

        for field_name, var in (("use_ssl", "USE_SSL"), ("force_path_style", "FORCE_PATH_STYLE")):
            if get(var) is not None:
                kwargs[field_name] = get(var).strip().lower() in _TRUE

        access_key = env.get("AWS_ACCESS_KEY_ID")
        secret_key = env.get("AWS_SECRET_ACCESS_KEY")
        if access_key and secret_key:
            kwargs["credentials"] = Credentials(
                access_key_id=access_key,
                secret_access_key=secret_key,
                session_token=env.get("AWS_SESSION_TOKEN") or None,
            )

        key = _encryption_key_from_env(get)
        if key is not None:
            kwargs["encryption_key"] = key

        return cls(**kwargs)


def _encryption_key_from_env(get):
    raw = get("ENCRYPTION_KEY")
    if raw is not None:
        try:
            decoded = base64.b64decode(raw, validate=True)
        except (binascii.Error, ValueError) as e:
            raise InvalidKeyMaterialError("SEALEDSTORE_ENCRYPTION_KEY is not valid base64") from e
        return SymmetricKey(decoded)

    password = get("MASTER_PASSWORD")
    if password is not None:
        salt = get("MASTER_SALT")
        if salt is None:
            raise InvalidKeyMaterialError(
                "SEALEDSTORE_MASTER_SALT is required with SEALEDSTORE_MASTER_PASSWORD"
            )
        return derive_symmetric_key(password, bytes.fromhex(salt))

    service = get("KEYRING_SERVICE")
    if service is not None:
        secure, reason = assess_keyring_backend()
        if not secure:
            logger.warning("loading master key from keyring: %s", reason)
        return load_key_material(service, get("KEYRING_ACCOUNT") or "default")

    return None
