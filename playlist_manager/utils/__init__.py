"""Cross-cutting utilities for the playlist manager.

Modules:
    logging: structlog configuration and logger factory.
    encryption: Fernet symmetric encryption for stored provider tokens.
    alerts: Discord webhook alerts for quota thresholds.
"""

from playlist_manager.utils.encryption import (
    DecryptionError,
    EncryptionKeyMissing,
    EncryptionService,
    get_encryption_service,
)

__all__ = [
    "DecryptionError",
    "EncryptionKeyMissing",
    "EncryptionService",
    "get_encryption_service",
]
