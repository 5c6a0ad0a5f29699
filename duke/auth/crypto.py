"""
Symmetric encryption for generated default passwords.

Uses Fernet (AES + HMAC) from the cryptography library. The key comes from
auth.secret_key; without one a process-local key is generated, so secrets
written by an earlier run can no longer be shown.
"""

from __future__ import annotations

from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from ..utils.exceptions import ConfigError
from ..utils.logger import get_logger

logger = get_logger(__name__)


class SecretBox:
    def __init__(self, key: Optional[str] = None):
        if not key:
            logger.warning("No auth.secret_key configured, using an ephemeral key")
            key = Fernet.generate_key().decode("utf-8")
        try:
            self._fernet = Fernet(key)
        except (ValueError, TypeError) as e:
            raise ConfigError(f"Invalid auth.secret_key: {e}")

    def encrypt(self, plain: str) -> str:
        """Encrypt a string for persistent storage."""
        return self._fernet.encrypt(plain.encode("utf-8")).decode("utf-8")

    def decrypt(self, ciphertext: str) -> Optional[str]:
        """Decrypt a previously encrypted string. None if the key does not match."""
        try:
            return self._fernet.decrypt(ciphertext.encode("utf-8")).decode("utf-8")
        except InvalidToken:
            return None
