# =============================================================================
# Credential Encryption — Fernet Tokens for Data-Source API Keys
# =============================================================================
#
# External data-source API keys are stored encrypted in
# external_data_sources.encrypted_api_key and decrypted only at the moment a
# connector builds its request.
#
# The key comes from settings.encryption_key (ENCRYPTION_KEY). A value that is
# not already a Fernet key is stretched with SHA-256. With no key set, one is
# derived from DATABASE_URL so development works out of the box; production
# must set ENCRYPTION_KEY.
# =============================================================================

from __future__ import annotations

import base64
import hashlib
import logging

from cryptography.fernet import Fernet, InvalidToken

from aihub.config import settings
from aihub.errors import ConfigurationError

logger = logging.getLogger(__name__)

_fernet: Fernet | None = None


def _derive_key(material: str) -> bytes:
    digest = hashlib.sha256(material.encode()).digest()
    return base64.urlsafe_b64encode(digest)


def _get_fernet() -> Fernet:
    global _fernet
    if _fernet is not None:
        return _fernet

    key = settings.encryption_key
    if not key:
        logger.warning(
            "ENCRYPTION_KEY not set, using a key derived from DATABASE_URL. "
            "Set ENCRYPTION_KEY in production."
        )
        _fernet = Fernet(_derive_key(settings.database_url))
        return _fernet

    try:
        _fernet = Fernet(key.encode())
    except ValueError:
        _fernet = Fernet(_derive_key(key))
    return _fernet


def reset_cipher() -> None:
    """Forget the cached cipher (after changing settings.encryption_key)."""
    global _fernet
    _fernet = None


def encrypt(plaintext: str | None) -> str:
    """Encrypt a credential → Fernet token string ("" stays "")."""
    if not plaintext:
        return ""
    return _get_fernet().encrypt(plaintext.encode()).decode()


def decrypt(ciphertext: str | None) -> str:
    """
    Decrypt a Fernet token → plaintext credential.

    Raises:
        ConfigurationError: The token was not produced with the current key.
    """
    if not ciphertext:
        return ""
    try:
        return _get_fernet().decrypt(ciphertext.encode()).decode()
    except InvalidToken:
        raise ConfigurationError(
            "Stored credential cannot be decrypted with the configured "
            "ENCRYPTION_KEY"
        ) from None
