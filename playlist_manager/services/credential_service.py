"""Credential storage for users' YouTube access tokens.

Tokens are acquired and refreshed outside this service; here they are only
stored Fernet-encrypted and resolved into a remote-call handle for the
bulk orchestrator and the playlist browser.

Usage:
    from playlist_manager.services.credential_service import CredentialService

    service = CredentialService()
    await service.store_access_token(user_id, token, db)
    token = await service.get_access_token(user_id, db)

Security Notes:
    - Tokens are encrypted before database storage
    - Access events are logged with structlog (user_id, operation, success)
    - NEVER log or expose plaintext tokens
"""

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from playlist_manager.clients.youtube import (
    PlaylistProvider,
    ProviderFactory,
    YouTubePlaylistClient,
)
from playlist_manager.models import UserCredential
from playlist_manager.utils.encryption import DecryptionError, get_encryption_service
from playlist_manager.utils.logging import get_logger

log = get_logger(__name__)


class CredentialService:
    """Encrypted storage and retrieval of per-user access tokens.

    Example:
        >>> service = CredentialService()
        >>> await service.store_access_token("user-1", "ya29.a0...", db)
        >>> token = await service.get_access_token("user-1", db)
    """

    async def _get_credential(self, user_id: str, db: AsyncSession) -> UserCredential | None:
        result = await db.execute(select(UserCredential).where(UserCredential.user_id == user_id))
        return result.scalar_one_or_none()

    async def store_access_token(self, user_id: str, token: str, db: AsyncSession) -> None:
        """Encrypt and store a user's access token, replacing any previous one.

        Args:
            user_id: Owner of the token.
            token: Plaintext OAuth access token.
            db: Async database session.
        """
        encrypted_token = get_encryption_service().encrypt(token)

        credential = await self._get_credential(user_id, db)
        if credential is None:
            db.add(UserCredential(user_id=user_id, access_token_encrypted=encrypted_token))
        else:
            credential.access_token_encrypted = encrypted_token
        await db.commit()

        log.info(
            "credential_stored",
            user_id=user_id,
            credential_type="youtube_access_token",
            success=True,
        )

    async def get_access_token(self, user_id: str, db: AsyncSession) -> str | None:
        """Retrieve and decrypt a user's access token.

        Returns:
            Decrypted token, or None if the user has no stored token.

        Raises:
            DecryptionError: If decryption fails (invalid key or corrupted data).
        """
        credential = await self._get_credential(user_id, db)
        if credential is None or credential.access_token_encrypted is None:
            log.info(
                "credential_get",
                user_id=user_id,
                credential_type="youtube_access_token",
                success=True,
                has_credential=False,
            )
            return None

        try:
            decrypted = get_encryption_service().decrypt(
                credential.access_token_encrypted, user_id=user_id
            )
        except DecryptionError:
            log.error(
                "credential_decrypt_failed",
                user_id=user_id,
                credential_type="youtube_access_token",
            )
            raise

        log.info(
            "credential_get",
            user_id=user_id,
            credential_type="youtube_access_token",
            success=True,
            has_credential=True,
        )
        return decrypted

    async def delete_access_token(self, user_id: str, db: AsyncSession) -> bool:
        """Forget a user's token (e.g. after the provider revoked it).

        Returns:
            True if a token was removed.
        """
        credential = await self._get_credential(user_id, db)
        if credential is None or credential.access_token_encrypted is None:
            return False
        credential.access_token_encrypted = None
        await db.commit()
        log.info("credential_deleted", user_id=user_id, credential_type="youtube_access_token")
        return True


def build_provider_factory(
    session_factory: async_sessionmaker[AsyncSession],
    http_client: httpx.AsyncClient | None = None,
    credential_service: CredentialService | None = None,
) -> ProviderFactory:
    """Return a ProviderFactory resolving users to YouTube clients.

    The factory returns None when the user has no stored token, which the
    orchestrator reports as NoTokensError.
    """
    service = credential_service or CredentialService()

    async def resolve(user_id: str) -> PlaylistProvider | None:
        async with session_factory() as db:
            token = await service.get_access_token(user_id, db)
        if not token:
            return None
        return YouTubePlaylistClient(token, http_client=http_client)

    return resolve
