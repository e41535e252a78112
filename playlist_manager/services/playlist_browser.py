"""Read-only playlist browsing with per-page quota accounting.

Every list call costs 1 quota unit and is recorded in the ledger as it is
issued, whether it succeeds or not.

Paging Rules (list_items):
    - No page token: fetch every page unless fetch_all is False
    - Page token given: fetch that single page unless fetch_all is True
    - limit stops paging once at least `limit` items were fetched
"""

from dataclasses import dataclass, field
from typing import Any

from playlist_manager.clients.youtube import PlaylistPage, PlaylistProvider, ProviderFactory
from playlist_manager.constants import LIST_COST, METHOD_COST
from playlist_manager.exceptions import InvalidPayloadError, NoTokensError
from playlist_manager.services.quota_ledger import QuotaLedger
from playlist_manager.utils.logging import get_logger

log = get_logger(__name__)

PLAYLISTS_LIST_COST = METHOD_COST["playlists.list"]


@dataclass
class BrowseResult:
    items: list[dict[str, Any]] = field(default_factory=list)
    next_page_token: str | None = None
    estimated_quota: int = 0


class PlaylistBrowser:
    """Lists playlists and playlist items for a user.

    Args:
        ledger: Receives 1 unit per page fetched.
        provider_factory: Resolves a user id to a PlaylistProvider, or None.
    """

    def __init__(self, ledger: QuotaLedger, provider_factory: ProviderFactory):
        self.ledger = ledger
        self.provider_factory = provider_factory

    async def _provider(self, user_id: str) -> PlaylistProvider:
        provider = await self.provider_factory(user_id)
        if provider is None:
            raise NoTokensError(user_id)
        return provider

    async def _record_page(self, user_id: str, units: int) -> None:
        try:
            await self.ledger.record_call_cost(units, user_id=user_id)
        except Exception as e:
            log.error("quota_record_failed", user_id=user_id, units=units, error=str(e))

    async def list_items(
        self,
        user_id: str,
        playlist_id: str,
        page_token: str | None = None,
        fetch_all: bool | None = None,
        limit: int | None = None,
    ) -> BrowseResult:
        """List a playlist's items.

        Raises:
            InvalidPayloadError: If playlist_id is empty.
            NoTokensError: If the user has no stored tokens.
            ProviderError: If a list call fails.
        """
        if not playlist_id:
            raise InvalidPayloadError("Missing playlistId")

        if fetch_all is None:
            fetch_all = page_token is None

        provider = await self._provider(user_id)
        result = BrowseResult()
        token = page_token
        try:
            while True:
                try:
                    page: PlaylistPage = await provider.list_items(playlist_id, token)
                finally:
                    result.estimated_quota += LIST_COST
                    await self._record_page(user_id, LIST_COST)

                result.items.extend(page.items)
                token = page.next_page_token

                if not fetch_all:
                    result.next_page_token = token
                    break
                if not token or (limit is not None and len(result.items) >= limit):
                    break
        finally:
            close = getattr(provider, "close", None)
            if close is not None:
                await close()

        log.info(
            "playlist_items_listed",
            user_id=user_id,
            playlist_id=playlist_id,
            count=len(result.items),
            pages=result.estimated_quota // LIST_COST,
        )
        return result

    async def list_playlists(self, user_id: str) -> BrowseResult:
        """List every playlist owned by the user, all pages."""
        provider = await self._provider(user_id)
        result = BrowseResult()
        token = None
        try:
            while True:
                try:
                    page = await provider.list_playlists(token)
                finally:
                    result.estimated_quota += PLAYLISTS_LIST_COST
                    await self._record_page(user_id, PLAYLISTS_LIST_COST)

                result.items.extend(page.items)
                token = page.next_page_token
                if not token:
                    break
        finally:
            close = getattr(provider, "close", None)
            if close is not None:
                await close()

        log.info("playlists_listed", user_id=user_id, count=len(result.items))
        return result
