"""
Encryption service for provider credentials stored at rest.

External calendar access and refresh tokens are encrypted with Fernet
symmetric encryption before they are written to the database.
"""

import base64
import binascii
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from core.config import ENCRYPTION_KEY


class EncryptionService:
    """Service for encrypting and decrypting sensitive values."""

    def __init__(self, key: Optional[str] = None):
        """Initialize with an encryption key, defaulting to ENCRYPTION_KEY.

        Expects a base64-encoded Fernet key (44 characters, 32 bytes when decoded).
        Generate with: python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"
        """
        key = key or ENCRYPTION_KEY
        if not key:
            raise ValueError("ENCRYPTION_KEY environment variable must be set")

        try:
            decoded_key = base64.urlsafe_b64decode(key)
        except (binascii.Error, ValueError) as e:
            raise ValueError(f"Invalid Fernet key format. Expected base64-encoded 32-byte key: {e}")
        if len(decoded_key) != 32:
            raise ValueError(f"Fernet key must be 32 bytes when decoded (44 base64 characters), got {len(decoded_key)} bytes")

        self._fernet = Fernet(key.encode('utf-8'))

    def encrypt_text(self, text: str) -> str:
        """Encrypt a plain text string.

        Args:
            text: Text to encrypt

        Returns:
            Fernet token as a string
        """
        return self._fernet.encrypt(text.encode('utf-8')).decode('utf-8')

    def decrypt_text(self, encrypted_text: str) -> str:
        """Decrypt a Fernet token back to plain text.

        Raises:
            ValueError: If the token is invalid or was encrypted with another key
        """
        try:
            decrypted = self._fernet.decrypt(encrypted_text.encode('utf-8'))
            return decrypted.decode('utf-8')
        except (InvalidToken, UnicodeDecodeError) as e:
            raise ValueError(f"Failed to decrypt text: {e}")


_encryption_service: Optional[EncryptionService] = None


def get_encryption_service() -> EncryptionService:
    """Get the encryption service, initializing it on first use."""
    global _encryption_service
    if _encryption_service is None:
        _encryption_service = EncryptionService()
    return _encryption_service
