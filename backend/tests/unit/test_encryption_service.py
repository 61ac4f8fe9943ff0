"""
Tests for provider token encryption.
"""

import pytest
from unittest.mock import patch

from services.encryption_service import EncryptionService

# Use a valid Fernet key for testing
VALID_FERNET_KEY = "YyD8O45QlfRZUXT9kzjW3xEf6iNqz5EtF_OB8WEOBqw="  # 32 bytes base64 encoded
OTHER_FERNET_KEY = "Kj0Qm6bZ8xJ7o1y2HcVn4sT5uWd3eRf9gAhLpNqMiC0="


class TestEncryptionService:
    """Test encryption/decryption of tokens."""

    @pytest.fixture
    def encryption_service(self):
        """Create encryption service with valid test key."""
        return EncryptionService(VALID_FERNET_KEY)

    def test_encrypt_text(self, encryption_service):
        """Encrypted token differs from the plain token."""
        token = "ya29.access-token"
        encrypted = encryption_service.encrypt_text(token)

        assert isinstance(encrypted, str)
        assert encrypted != token

    def test_decrypt_text(self, encryption_service):
        """Decrypting returns the original token."""
        encrypted = encryption_service.encrypt_text("refresh-token-value")
        assert encryption_service.decrypt_text(encrypted) == "refresh-token-value"

    def test_decrypt_invalid_text(self, encryption_service):
        with pytest.raises(ValueError, match="Failed to decrypt text"):
            encryption_service.decrypt_text("invalid_encrypted_text")

    def test_decrypt_with_other_key_fails(self, encryption_service):
        encrypted = EncryptionService(OTHER_FERNET_KEY).encrypt_text("secret")
        with pytest.raises(ValueError):
            encryption_service.decrypt_text(encrypted)

    def test_initialization_without_key(self):
        """Service refuses to start without a key."""
        with patch("services.encryption_service.ENCRYPTION_KEY", ""):
            with pytest.raises(ValueError, match="ENCRYPTION_KEY environment variable must be set"):
                EncryptionService("")

    def test_initialization_with_invalid_key(self):
        """Service rejects keys that are not base64."""
        with pytest.raises(ValueError, match="Invalid Fernet key format"):
            EncryptionService("short")

    def test_initialization_with_wrong_length_key(self):
        # Valid base64, but 24 bytes instead of 32
        with pytest.raises(ValueError, match="must be 32 bytes"):
            EncryptionService("YWJjZGVmZ2hpamtsbW5vcHFyc3R1dnd4")
