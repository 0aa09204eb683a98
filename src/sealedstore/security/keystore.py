"""OS keystore integration for master keys, using keyring.

Master keys are stored as strings under a service/account pair:

- symmetric keys as ``aes:<base64 key>``
- RSA key pairs as ``rsa:<base64 PKCS#8 PEM private key>``

Use this only for opt-in convenience storage; keyring does not provide
hardware-backed security on all platforms.
"""
import base64
import binascii

from cryptography.hazmat.primitives import serialization
import keyring
from keyring.errors import PasswordDeleteError

from sealedstore.core.exceptions import InvalidKeyMaterialError
from sealedstore.core.models import AsymmetricKey, KeyKind, SymmetricKey


_PREFIXES = {KeyKind.SYMMETRIC: "aes", KeyKind.ASYMMETRIC: "rsa"}


def encode_key_material(material) -> str:
    if material.kind is KeyKind.SYMMETRIC:
        raw = material.key
    else:
        if material.private_key is None:
            raise InvalidKeyMaterialError("only full RSA key pairs can be stored in the keystore")
        raw = material.private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
    return f"{_PREFIXES[material.kind]}:{base64.b64encode(raw).decode('ascii')}"


def decode_key_material(secret: str):
    prefix, _, payload = secret.partition(":")
    try:
        raw = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise InvalidKeyMaterialError("stored key is not valid base64") from e
    if prefix == "aes":
        return SymmetricKey(raw)
    if prefix == "rsa":
        return AsymmetricKey.from_pem(raw)
    raise InvalidKeyMaterialError(f"unknown stored key type: {prefix!r}")


def save_key_material(service: str, account: str, material) -> None:
    """Persist a master key in the OS keystore under (service, account)."""
    keyring.set_password(service, account, encode_key_material(material))


def assess_keyring_backend() -> tuple[bool, str]:
    """Return (is_secure, message) describing the current keyring backend.

    Heuristics are used because the `keyring` package exposes different backends
    across platforms.
    """
    try:
        backend = keyring.get_keyring()
    except Exception as e:
        return False, f"failed to get keyring backend: {e}"

    name = backend.__class__.__name__
    priority = getattr(backend, "priority", None)

    insecure_indicators = ("Plaintext", "Uncrypted", "Simple", "File")
    if any(tok in name for tok in insecure_indicators):
        return False, f"insecure backend detected: {name}"

    if priority is not None and priority <= 0:
        return False, f"no suitable secure keyring backend available (priority={priority}, backend={name})"

    return True, f"backend looks acceptable: {name} (priority={priority})"


def load_key_material(service: str, account: str):
    """Load a master key from the OS keystore; returns KeyMaterial or None."""
    secret = keyring.get_password(service, account)
    if secret is None:
        return None
    return decode_key_material(secret)


def delete_key_material(service: str, account: str) -> None:
    """Remove the master key from the OS keystore."""
    try:
        keyring.delete_password(service, account)
    except PasswordDeleteError:
        # nothing stored under this name
        pass
