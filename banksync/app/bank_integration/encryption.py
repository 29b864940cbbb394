"""
Token Encryption Module

Encrypts OAuth access/refresh tokens with Fernet before they are written to
bank_connections. The Fernet key is derived from the configured SECRET_KEY.
"""

import base64
import hashlib
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from banksync.config import get_settings


class TokenEncryption:
    """
    Encrypt and decrypt OAuth tokens for storage in the database.

    Example:
        >>> enc = TokenEncryption("my-secret")
        >>> stored = enc.encrypt("access-token")
        >>> enc.decrypt(stored)
        'access-token'
    """

    def __init__(self, secret_key: Optional[str] = None):
        secret_key = secret_key or get_settings().secret_key

        # Fernet needs a urlsafe-base64 32-byte key; hash the secret to get one
        key_bytes = hashlib.sha256(secret_key.encode()).digest()
        self.cipher = Fernet(base64.urlsafe_b64encode(key_bytes))

    def encrypt(self, token: Optional[str]) -> Optional[str]:
        if not token:
            return None
        return self.cipher.encrypt(token.encode()).decode()

    def decrypt(self, encrypted_token: Optional[str]) -> Optional[str]:
        """
        Decrypt a stored token.

        Raises:
            ValueError: If the value was not produced with the current key
        """
        if not encrypted_token:
            return None
        try:
            return self.cipher.decrypt(encrypted_token.encode()).decode()
        except InvalidToken as e:
            raise ValueError("Stored token could not be decrypted") from e
