"""
Market Intel - API Key Vault

Encrypts provider API keys at rest with Fernet (cryptography).

The encryption key comes from API_KEY_ENCRYPTION_KEY (a urlsafe base64 Fernet
key). When unset, a key is derived from SECRET_KEY with SHA-256 so a single
secret is enough for development installs.
"""

import base64
import hashlib
import logging
import os
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)


class KeyVaultError(Exception):
    """Raised when a stored key cannot be decrypted."""


def mask_key(api_key: str) -> str:
    """Display form of a key: first and last four characters."""
    if not api_key or len(api_key) <= 8:
        return "***"
    return f"{api_key[:4]}...{api_key[-4:]}"


def _derive_fernet_key(secret: str) -> bytes:
    digest = hashlib.sha256(secret.encode()).digest()
    return base64.urlsafe_b64encode(digest)


_fernet: Optional[Fernet] = None


def get_fernet() -> Fernet:
    """Singleton Fernet instance built from the environment."""
    global _fernet
    if _fernet is None:
        configured = os.getenv("API_KEY_ENCRYPTION_KEY")
        if configured:
            _fernet = Fernet(configured.encode())
        else:
            secret = os.getenv("SECRET_KEY")
            if not secret:
                raise KeyVaultError("API_KEY_ENCRYPTION_KEY or SECRET_KEY must be set")
            logger.info("API_KEY_ENCRYPTION_KEY not set; deriving vault key from SECRET_KEY")
            _fernet = Fernet(_derive_fernet_key(secret))
    return _fernet


def encrypt_key(api_key: str) -> str:
    return get_fernet().encrypt(api_key.encode()).decode()


def decrypt_key(token: str) -> str:
    try:
        return get_fernet().decrypt(token.encode()).decode()
    except InvalidToken as e:
        raise KeyVaultError("Stored API key could not be decrypted") from e


def reset_vault():
    """Drop the cached Fernet instance (tests, key rotation)."""
    global _fernet
    _fernet = None
