"""Symmetric encryption for OAuth tokens stored in the database."""

import base64
import binascii
import hashlib
import logging

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)


def _derive_fernet_key(secret: str) -> bytes:
    """Accept a ready Fernet key, or derive one from an arbitrary passphrase."""
    raw = secret.encode()
    try:
        decoded = base64.urlsafe_b64decode(raw)
    except (binascii.Error, ValueError):
        decoded = b""
    if len(decoded) == 32:
        return raw
    return base64.urlsafe_b64encode(hashlib.sha256(raw).digest())


class TokenCipher:
    """Encrypts and decrypts token strings with Fernet."""

    def __init__(self, secret: str | None = None) -> None:
        if secret:
            key = _derive_fernet_key(secret)
        else:
            logger.warning(
                "No token encryption key configured; generated an ephemeral key. "
                "Stored tokens will be unreadable after a restart."
            )
            key = Fernet.generate_key()
        self._fernet = Fernet(key)

    def encrypt(self, value: str) -> str:
        return self._fernet.encrypt(value.encode()).decode()

    def decrypt(self, value: str, ttl: int | None = None) -> str:
        """Raises InvalidToken if the value was not produced with this key,
        or is older than ``ttl`` seconds when one is given."""
        return self._fernet.decrypt(value.encode(), ttl=ttl).decode()


__all__ = ["InvalidToken", "TokenCipher"]
