"""Common storage utilities shared between memory and postgres implementations."""

from __future__ import annotations

import base64
import hashlib
from ipaddress import ip_address
from typing import Any, Dict, Optional

from cryptography.fernet import Fernet, InvalidToken

from passage.logging import get_logger

logger = get_logger(__name__)

# Associate columns that callers may change after creation
UPDATABLE_ASSOCIATE_FIELDS = frozenset(
    {"email", "email_verified", "phone", "phone_verified", "password_hash"}
)


def derive_cipher_key(key_material: str) -> bytes:
    return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())


class SecretCipher:
    """Fernet wrapper used to keep TOTP secrets encrypted at rest."""

    def __init__(self, key_material: Optional[str] = None) -> None:
        if key_material:
            key = derive_cipher_key(key_material)
        else:
            logger.warning(
                "secret_cipher_ephemeral_key",
                message="No MFA key material configured; secrets will not survive a restart",
            )
            key = Fernet.generate_key()
        try:
            self._fernet = Fernet(key)
        except Exception as exc:
            raise RuntimeError("Unable to initialize MFA cipher") from exc

    def encrypt(self, secret: str) -> str:
        if not secret:
            return secret
        return self._fernet.encrypt(secret.encode()).decode()

    def decrypt(self, secret: str) -> str:
        if not secret:
            return secret
        try:
            return self._fernet.decrypt(secret.encode()).decode()
        except InvalidToken:
            logger.warning("mfa_secret_decrypt_failed")
            return secret


def normalize_ip(raw: Optional[str]) -> Optional[str]:
    """Return a canonical textual IP address, or None for missing/garbage input."""
    if not raw:
        return None
    try:
        return str(ip_address(raw.strip()))
    except ValueError:
        logger.warning("client_ip_invalid", client_ip=raw[:64])
        return None


def filter_associate_updates(fields: Dict[str, Any]) -> Dict[str, Any]:
    unknown = set(fields) - UPDATABLE_ASSOCIATE_FIELDS
    if unknown:
        raise ValueError(f"unsupported associate fields: {', '.join(sorted(unknown))}")
    return dict(fields)
