"""Pydantic schemas for validation and serialization."""

from playlist_manager.schemas.bulk import (
    ActionItemOut,
    ActionOut,
    BulkAddRequest,
    BulkAddResult,
    BulkMoveRequest,
    BulkMoveResult,
    BulkRemoveRequest,
    BulkRemoveResult,
    MoveItem,
)
from playlist_manager.schemas.common import ErrorBody, ErrorResponse
from playlist_manager.schemas.playlists import PlaylistItemsOut, PlaylistsOut
from playlist_manager.schemas.quota import QuotaOut

__all__ = [
    "ActionItemOut",
    "ActionOut",
    "BulkAddRequest",
    "BulkAddResult",
    "BulkMoveRequest",
    "BulkMoveResult",
    "BulkRemoveRequest",
    "BulkRemoveResult",
    "ErrorBody",
    "ErrorResponse",
    "MoveItem",
    "PlaylistItemsOut",
    "PlaylistsOut",
    "QuotaOut",
]
