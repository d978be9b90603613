"""WireGuard cryptographic utilities.

Provides Curve25519 key generation for new devices and optional Fernet
encryption for storing device secrets at rest.
"""

from __future__ import annotations

import base64
import logging
import secrets
from dataclasses import dataclass

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey

from boldvpn.config import settings
from boldvpn.services.provisioning_errors import ToolingUnavailable

_logger = logging.getLogger(__name__)
_encryption_warning_logged = False


@dataclass(frozen=True)
class DeviceKeys:
    private_key: str
    public_key: str
    preshared_key: str


def generate_keypair() -> tuple[str, str]:
    """Generate a WireGuard Curve25519 keypair.

    Returns:
        Tuple of (private_key_base64, public_key_base64)

    Raises:
        ToolingUnavailable: If the crypto backend has no X25519 support
    """
    try:
        private_key = X25519PrivateKey.generate()
    except UnsupportedAlgorithm as e:
        _logger.error("X25519 is not supported by the installed OpenSSL backend")
        raise ToolingUnavailable(
            "WireGuard key generation is unavailable: X25519 not supported by OpenSSL"
        ) from e

    private_bytes = private_key.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption(),
    )
    public_bytes = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )

    return (
        base64.b64encode(private_bytes).decode("ascii"),
        base64.b64encode(public_bytes).decode("ascii"),
    )


def generate_preshared_key() -> str:
    """Generate a 32-byte base64 preshared key."""
    return base64.b64encode(secrets.token_bytes(32)).decode("ascii")


def generate_device_keys() -> DeviceKeys:
    """Generate the full key material for a new device. Never returns placeholder keys."""
    private_key, public_key = generate_keypair()
    return DeviceKeys(
        private_key=private_key,
        public_key=public_key,
        preshared_key=generate_preshared_key(),
    )


def derive_public_key(private_key_b64: str) -> str:
    private_bytes = base64.b64decode(private_key_b64)
    public_key = X25519PrivateKey.from_private_bytes(private_bytes).public_key()
    public_bytes = public_key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
    return base64.b64encode(public_bytes).decode("ascii")


def validate_key(key_b64: str) -> bool:
    """Return True if the string is a base64-encoded 32-byte key."""
    try:
        return len(base64.b64decode(key_b64, validate=True)) == 32
    except (ValueError, TypeError):
        return False


def _fernet() -> Fernet | None:
    global _encryption_warning_logged

    if not settings.key_encryption_key:
        if not _encryption_warning_logged:
            _logger.warning(
                "WIREGUARD_KEY_ENCRYPTION_KEY is not set; device secrets are stored unencrypted"
            )
            _encryption_warning_logged = True
        return None
    return Fernet(settings.key_encryption_key.encode("ascii"))


def encrypt_secret(value: str) -> str:
    """Prepare a secret for storage.

    Returns an ``enc:`` prefixed Fernet token, or a ``plain:`` prefixed value
    when no encryption key is configured.
    """
    fernet = _fernet()
    if fernet is None:
        return f"plain:{value}"
    return f"enc:{fernet.encrypt(value.encode('utf-8')).decode('ascii')}"


def decrypt_secret(stored: str) -> str:
    """Reverse :func:`encrypt_secret`.

    Raises:
        ValueError: If the value is encrypted and cannot be decrypted
    """
    if stored.startswith("plain:"):
        return stored[6:]

    if stored.startswith("enc:"):
        fernet = _fernet()
        if fernet is None:
            raise ValueError("Encrypted secret found but WIREGUARD_KEY_ENCRYPTION_KEY not set")
        try:
            return fernet.decrypt(stored[4:].encode("ascii")).decode("utf-8")
        except InvalidToken as e:
            raise ValueError("Failed to decrypt stored secret") from e

    # Rows written before encryption was introduced
    return stored
