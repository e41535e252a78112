"""Read-only playlist routes.

- GET /api/playlist-items?playlistId=...&pageToken=...&all=1|0&limit=N
- GET /api/playlists

Each page fetched from YouTube costs 1 quota unit and is recorded in the
ledger; estimatedQuota reports the pages fetched by this request.
"""

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from playlist_manager.routes.deps import get_browser, get_user_id, ok_response
from playlist_manager.schemas.playlists import PlaylistItemsOut, PlaylistsOut
from playlist_manager.services.playlist_browser import PlaylistBrowser

router = APIRouter(prefix="/api", tags=["playlists"])


def _parse_all(value: str | None) -> bool | None:
    if value is None:
        return None
    lowered = value.strip().lower()
    if lowered in ("1", "true"):
        return True
    if lowered in ("0", "false"):
        return False
    return None


@router.get("/playlist-items")
async def list_playlist_items(
    playlist_id: str | None = Query(default=None, alias="playlistId"),
    page_token: str | None = Query(default=None, alias="pageToken"),
    all_pages: str | None = Query(default=None, alias="all"),
    limit: int | None = Query(default=None),
    user_id: str = Depends(get_user_id),
    browser: PlaylistBrowser = Depends(get_browser),
) -> JSONResponse:
    result = await browser.list_items(
        user_id,
        playlist_id or "",
        page_token=page_token or None,
        fetch_all=_parse_all(all_pages),
        limit=limit if limit and limit > 0 else None,
    )
    return ok_response(
        PlaylistItemsOut(
            items=result.items,
            next_page_token=result.next_page_token,
            estimated_quota=result.estimated_quota,
        )
    )


@router.get("/playlists")
async def list_playlists(
    user_id: str = Depends(get_user_id),
    browser: PlaylistBrowser = Depends(get_browser),
) -> JSONResponse:
    result = await browser.list_playlists(user_id)
    return ok_response(
        PlaylistsOut(playlists=result.items, estimated_quota=result.estimated_quota)
    )
