"""YouTube Data API v3 playlist client with rate limiting and error classification.

This module provides the remote playlist boundary used by the bulk
orchestrator and the playlist browser. It implements:
- Client-side pacing via AsyncLimiter (10 req/sec per client)
- Classification of Google error reasons into ProviderErrorReason
- Automatic retry with exponential backoff for read-only list calls only
  (timeouts, connection errors, rate limits). Mutations are never retried:
  a retried insert could create a duplicate playlist item.

Usage:
    client = YouTubePlaylistClient(access_token)
    page = await client.list_items("PL123")
    new_id = await client.insert("PL456", "dQw4w9WgXcQ")
    await client.delete(new_id)
    await client.close()
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx
from aiolimiter import AsyncLimiter
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from playlist_manager.constants import PROVIDER_PAGE_SIZE
from playlist_manager.exceptions import ProviderError, ProviderErrorReason
from playlist_manager.utils.logging import get_logger

log = get_logger(__name__)

YOUTUBE_API_BASE_URL = "https://www.googleapis.com/youtube/v3"

# Google error reasons → classified reason
_REASON_MAP: dict[str, ProviderErrorReason] = {
    "quotaExceeded": ProviderErrorReason.QUOTA_EXCEEDED,
    "dailyLimitExceeded": ProviderErrorReason.QUOTA_EXCEEDED,
    "rateLimitExceeded": ProviderErrorReason.RATE_LIMITED,
    "userRateLimitExceeded": ProviderErrorReason.RATE_LIMITED,
    "insufficientPermissions": ProviderErrorReason.FORBIDDEN,
    "forbidden": ProviderErrorReason.FORBIDDEN,
    "youtubeSignupRequired": ProviderErrorReason.FORBIDDEN,
    "playlistNotFound": ProviderErrorReason.NOT_FOUND,
    "playlistItemNotFound": ProviderErrorReason.NOT_FOUND,
    "videoNotFound": ProviderErrorReason.NOT_FOUND,
    "notFound": ProviderErrorReason.NOT_FOUND,
    "authError": ProviderErrorReason.UNAUTHORIZED,
    "invalidCredentials": ProviderErrorReason.UNAUTHORIZED,
}

# Fallback when the body carries no known reason
_STATUS_MAP: dict[int, ProviderErrorReason] = {
    401: ProviderErrorReason.UNAUTHORIZED,
    403: ProviderErrorReason.FORBIDDEN,
    404: ProviderErrorReason.NOT_FOUND,
    429: ProviderErrorReason.RATE_LIMITED,
}


@dataclass
class PlaylistPage:
    """One page of a list call.

    Attributes:
        items: Mapped entries (see _map_playlist_item / _map_playlist)
        next_page_token: Token for the next page, None on the last page
    """

    items: list[dict[str, Any]] = field(default_factory=list)
    next_page_token: str | None = None


class PlaylistProvider(Protocol):
    """Remote playlist operations used by the core.

    Every failure raises ProviderError with a classified reason.
    """

    async def list_items(self, playlist_id: str, page_token: str | None = None) -> PlaylistPage: ...

    async def list_playlists(self, page_token: str | None = None) -> PlaylistPage: ...

    async def insert(self, target_playlist_id: str, video_id: str) -> str: ...

    async def delete(self, playlist_item_id: str) -> None: ...


# Resolves a user's remote-call handle; None when no tokens are stored
ProviderFactory = Callable[[str], Awaitable[PlaylistProvider | None]]


def classify_error(status_code: int, provider_reason: str | None) -> ProviderErrorReason:
    """Map an HTTP status and Google error reason to a ProviderErrorReason."""
    if provider_reason and provider_reason in _REASON_MAP:
        return _REASON_MAP[provider_reason]
    return _STATUS_MAP.get(status_code, ProviderErrorReason.UNKNOWN)


def error_from_response(response: httpx.Response) -> ProviderError:
    """Build a ProviderError from a non-2xx Google API response."""
    message = ""
    provider_reason = None
    try:
        body = response.json()
    except ValueError:
        body = {}
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        message = error.get("message") or ""
        errors = error.get("errors") or []
        if errors and isinstance(errors[0], dict):
            provider_reason = errors[0].get("reason")
            message = message or errors[0].get("message") or ""

    reason = classify_error(response.status_code, provider_reason)
    return ProviderError(
        reason,
        message or f"YouTube API error: HTTP {response.status_code}",
        provider_reason=provider_reason,
    )


def _is_transient(exception: BaseException) -> bool:
    if isinstance(exception, (httpx.TimeoutException, httpx.ConnectError)):
        return True
    return (
        isinstance(exception, ProviderError)
        and exception.reason is ProviderErrorReason.RATE_LIMITED
    )


def _map_playlist_item(item: dict[str, Any]) -> dict[str, Any]:
    snippet = item.get("snippet") or {}
    details = item.get("contentDetails") or {}
    position = snippet.get("position")
    return {
        "id": item.get("id"),
        "videoId": details.get("videoId") or "",
        "title": snippet.get("title") or "",
        "position": position if isinstance(position, int) else None,
        "channelTitle": snippet.get("videoOwnerChannelTitle") or snippet.get("channelTitle") or "",
        "thumbnails": snippet.get("thumbnails"),
        "publishedAt": details.get("videoPublishedAt") or snippet.get("publishedAt"),
    }


def _map_playlist(item: dict[str, Any]) -> dict[str, Any]:
    snippet = item.get("snippet") or {}
    details = item.get("contentDetails") or {}
    thumbnails = snippet.get("thumbnails") or {}
    thumbnail_url = None
    for size in ("medium", "high", "default"):
        if isinstance(thumbnails.get(size), dict) and thumbnails[size].get("url"):
            thumbnail_url = thumbnails[size]["url"]
            break
    return {
        "id": item.get("id"),
        "title": snippet.get("title") or "",
        "channelTitle": snippet.get("channelTitle") or "",
        "itemCount": details.get("itemCount") or 0,
        "thumbnails": snippet.get("thumbnails"),
        "thumbnailUrl": thumbnail_url,
        "publishedAt": snippet.get("publishedAt"),
    }


class YouTubePlaylistClient:
    """YouTube playlist client bound to one user's OAuth access token.

    Args:
        access_token: OAuth 2.0 access token (never logged).
        http_client: Shared AsyncClient. A private one is created when omitted
            and closed by close().
        rate_limiter: Optional limiter shared between clients.
    """

    def __init__(
        self,
        access_token: str,
        http_client: httpx.AsyncClient | None = None,
        rate_limiter: AsyncLimiter | None = None,
    ):
        self.access_token = access_token
        self._owns_client = http_client is None
        self.client = http_client or httpx.AsyncClient(timeout=30.0)
        self.rate_limiter = rate_limiter or AsyncLimiter(max_rate=10, time_period=1)
        self.base_url = YOUTUBE_API_BASE_URL

    def _get_headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Accept": "application/json",
        }

    async def _send(
        self,
        method: str,
        path: str,
        params: dict[str, Any],
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        async with self.rate_limiter:
            response = await self.client.request(
                method,
                f"{self.base_url}/{path}",
                params=params,
                json=json,
                headers=self._get_headers(),
            )

        if response.status_code >= 400:
            error = error_from_response(response)
            log.warning(
                "youtube_api_error",
                method=method,
                path=path,
                status_code=response.status_code,
                reason=error.reason.value,
                provider_reason=error.provider_reason,
            )
            raise error

        if response.status_code == 204 or not response.content:
            return {}
        return response.json()  # type: ignore[no-any-return]

    async def _call(
        self,
        method: str,
        path: str,
        params: dict[str, Any],
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        try:
            return await self._send(method, path, params, json)
        except httpx.HTTPError as e:
            log.warning("youtube_network_error", method=method, path=path, error=str(e))
            raise ProviderError(ProviderErrorReason.UNKNOWN, f"Network error: {e}") from e

    @retry(
        retry=retry_if_exception(_is_transient),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        reraise=True,
    )
    async def _read(self, path: str, params: dict[str, Any]) -> dict[str, Any]:
        return await self._send("GET", path, params)

    async def _list(self, path: str, params: dict[str, Any]) -> dict[str, Any]:
        try:
            return await self._read(path, params)
        except httpx.HTTPError as e:
            log.warning("youtube_network_error", method="GET", path=path, error=str(e))
            raise ProviderError(ProviderErrorReason.UNKNOWN, f"Network error: {e}") from e

    async def list_items(self, playlist_id: str, page_token: str | None = None) -> PlaylistPage:
        """Fetch one page of a playlist's items (playlistItems.list, 1 unit).

        Raises:
            ProviderError: After retries for transient failures, immediately otherwise.
        """
        params: dict[str, Any] = {
            "part": "snippet,contentDetails",
            "playlistId": playlist_id,
            "maxResults": PROVIDER_PAGE_SIZE,
        }
        if page_token:
            params["pageToken"] = page_token

        data = await self._list("playlistItems", params)
        return PlaylistPage(
            items=[_map_playlist_item(item) for item in data.get("items") or []],
            next_page_token=data.get("nextPageToken"),
        )

    async def list_playlists(self, page_token: str | None = None) -> PlaylistPage:
        """Fetch one page of the user's own playlists (playlists.list, 1 unit)."""
        params: dict[str, Any] = {
            "part": "snippet,contentDetails",
            "mine": "true",
            "maxResults": PROVIDER_PAGE_SIZE,
        }
        if page_token:
            params["pageToken"] = page_token

        data = await self._list("playlists", params)
        return PlaylistPage(
            items=[_map_playlist(item) for item in data.get("items") or []],
            next_page_token=data.get("nextPageToken"),
        )

    async def insert(self, target_playlist_id: str, video_id: str) -> str:
        """Append a video to a playlist (playlistItems.insert, 50 units).

        Returns:
            The new playlist item id.
        """
        data = await self._call(
            "POST",
            "playlistItems",
            params={"part": "snippet"},
            json={
                "snippet": {
                    "playlistId": target_playlist_id,
                    "resourceId": {"kind": "youtube#video", "videoId": video_id},
                }
            },
        )
        item_id = data.get("id")
        if not item_id:
            raise ProviderError(
                ProviderErrorReason.UNKNOWN, "YouTube did not return a playlist item id"
            )
        return item_id  # type: ignore[no-any-return]

    async def delete(self, playlist_item_id: str) -> None:
        """Remove a playlist item (playlistItems.delete, 50 units)."""
        await self._call("DELETE", "playlistItems", params={"id": playlist_item_id})

    async def close(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_client:
            await self.client.aclose()
