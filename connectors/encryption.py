"""
Token encryption — encrypt / decrypt OAuth tokens at rest.

Uses Fernet (AES-128-CBC + HMAC-SHA256) from the ``cryptography`` library.
The key comes from ``Settings.token_encryption_key``
(env var: ``TOKEN_ENCRYPTION_KEY``).

If no key is configured, encryption is **disabled** and tokens are stored
as plaintext (with a startup warning).  Generate a key with::

    python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"
"""

from __future__ import annotations

import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)


class TokenCipher:
    """Symmetric cipher for credential columns."""

    def __init__(self, key: str = "") -> None:
        self._fernet: Optional[Fernet] = None
        if not key:
            logger.warning(
                "TOKEN_ENCRYPTION_KEY not set — OAuth tokens will be stored as plaintext."
            )
            return
        self._fernet = Fernet(key.encode())
        logger.info("Token encryption enabled (Fernet/AES-128-CBC)")

    @property
    def enabled(self) -> bool:
        return self._fernet is not None

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt a token string for database storage.

        Returns the Fernet ciphertext (URL-safe base64).
        If encryption is disabled, returns the plaintext unchanged.
        """
        if self._fernet is None:
            return plaintext
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        """
        Decrypt a token string read from the database.

        Tokens stored before encryption was enabled are not valid Fernet
        tokens and are returned as-is.
        """
        if self._fernet is None:
            return ciphertext
        try:
            return self._fernet.decrypt(ciphertext.encode()).decode()
        except InvalidToken:
            return ciphertext
