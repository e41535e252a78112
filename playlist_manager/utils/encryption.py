"""Fernet symmetric encryption for stored provider access tokens.

The FERNET_KEY environment variable must hold a key generated via
`Fernet.generate_key()` or `scripts/generate_fernet_key.py`.

Usage:
    from playlist_manager.utils.encryption import get_encryption_service

    service = get_encryption_service()
    encrypted = service.encrypt("ya29.a0...")
    token = service.decrypt(encrypted, user_id="user-1")

Security Notes:
    - NEVER log plaintext tokens or ciphertext
    - Key rotation requires re-encrypting every stored credential
"""

import os
from typing import ClassVar

from cryptography.fernet import Fernet, InvalidToken


class EncryptionKeyMissing(Exception):
    """Raised when FERNET_KEY is not set or is not a valid Fernet key."""

    pass


class DecryptionError(Exception):
    """Raised when a stored token cannot be decrypted.

    Attributes:
        user_id: Owner of the credential, for debugging without exposing secrets.
    """

    def __init__(self, message: str, user_id: str | None = None) -> None:
        self.user_id = user_id
        super().__init__(message)

    def __str__(self) -> str:
        if self.user_id:
            return f"{super().__str__()} (user_id={self.user_id})"
        return super().__str__()


class EncryptionService:
    """Process-wide Fernet cipher, created lazily on first use.

    Raises:
        EncryptionKeyMissing: If FERNET_KEY environment variable is not set.
    """

    _instance: ClassVar["EncryptionService | None"] = None
    _cipher: Fernet

    def __new__(cls) -> "EncryptionService":
        if cls._instance is None:
            instance = super().__new__(cls)
            instance._cipher = _load_cipher()
            cls._instance = instance
        return cls._instance

    def encrypt(self, plaintext: str) -> bytes:
        """Encrypt a token for database storage."""
        return self._cipher.encrypt(plaintext.encode())

    def decrypt(self, ciphertext: bytes, user_id: str | None = None) -> str:
        """Decrypt a stored token.

        Args:
            ciphertext: Encrypted bytes from database storage.
            user_id: Optional owner id for error context.

        Raises:
            DecryptionError: Wrong key or corrupted ciphertext.
        """
        try:
            return self._cipher.decrypt(ciphertext).decode()
        except InvalidToken as e:
            raise DecryptionError(
                "Decryption failed: invalid encryption key or corrupted data",
                user_id=user_id,
            ) from e
        except (TypeError, UnicodeDecodeError) as e:
            raise DecryptionError(
                f"Decryption failed: {type(e).__name__}",
                user_id=user_id,
            ) from e

    @classmethod
    def reset_instance(cls) -> None:
        """Forget the cached cipher (tests switch FERNET_KEY between cases)."""
        cls._instance = None


def _load_cipher() -> Fernet:
    key = os.environ.get("FERNET_KEY")
    if not key:
        raise EncryptionKeyMissing(
            "FERNET_KEY environment variable is required. "
            "Generate a key using: python scripts/generate_fernet_key.py"
        )
    try:
        return Fernet(key.encode())
    except ValueError as e:
        raise EncryptionKeyMissing(
            "Invalid FERNET_KEY format: Fernet key must be 32 url-safe "
            "base64-encoded bytes."
        ) from e


def get_encryption_service() -> EncryptionService:
    """Get the shared EncryptionService instance."""
    return EncryptionService()
