"""Encryption service for destination connection URLs at rest."""

import sys
from typing import Optional
from cryptography.fernet import Fernet, InvalidToken

from hooksync.config import settings

KEY_HINT = "Generate a key with: python -c \"from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\""


class EncryptionService:
    """Encrypts sync target connection URLs, which embed destination credentials."""

    def __init__(self, key: Optional[str] = None):
        """Initialize encryption service.

        Args:
            key: Fernet key (defaults to settings.encryption_key).
        """
        key = key or settings.encryption_key
        self._validate_encryption_key(key)
        self._fernet = Fernet(key.encode())

    @staticmethod
    def _validate_encryption_key(key: Optional[str]) -> None:
        """Validate that the encryption key is configured and well formed.

        Raises:
            SystemExit: If encryption key is missing or invalid.
        """
        if not key:
            print("ERROR: ENCRYPTION_KEY environment variable is not set.", file=sys.stderr)
            print("Sync targets cannot be stored without a valid encryption key.", file=sys.stderr)
            print(KEY_HINT, file=sys.stderr)
            sys.exit(1)

        try:
            Fernet(key.encode())
        except (ValueError, TypeError) as e:
            print(f"ERROR: Invalid ENCRYPTION_KEY format: {e}", file=sys.stderr)
            print(KEY_HINT, file=sys.stderr)
            sys.exit(1)

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a connection URL.

        Returns:
            The encrypted string (base64 encoded).
        """
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        """Decrypt a stored connection URL.

        Raises:
            InvalidToken: If the ciphertext was produced with another key or is corrupted.
        """
        return self._fernet.decrypt(ciphertext.encode()).decode()


__all__ = ["EncryptionService", "InvalidToken"]
