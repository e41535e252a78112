"""Pydantic schemas for the read-only playlist endpoints."""

from typing import Any

from playlist_manager.schemas.common import CamelModel


class PlaylistItemsOut(CamelModel):
    items: list[dict[str, Any]]
    next_page_token: str | None = None
    estimated_quota: int


class PlaylistsOut(CamelModel):
    playlists: list[dict[str, Any]]
    estimated_quota: int
