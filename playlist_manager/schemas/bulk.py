"""Pydantic schemas for the bulk add/remove/move endpoints.

Request Schemas:
    - BulkAddRequest: {targetPlaylistId, videoIds[], idempotencyKey?}
    - BulkRemoveRequest: {playlistItemIds[], idempotencyKey?}
    - BulkMoveRequest: {sourcePlaylistId?, targetPlaylistId, items[{playlistItemId, videoId}],
      idempotencyKey?}

Response Schemas carry the Action, its items, the kind-specific projection
(created / removed / moved), estimatedQuota and the idempotent flag.

All list fields are bounded by MAX_BULK_ITEMS and validated before any
side effect; a violation is reported as 400 invalid_request.
"""

from datetime import datetime
from typing import Annotated

from pydantic import Field, StringConstraints

from playlist_manager.constants import MAX_BULK_ITEMS
from playlist_manager.models import ActionItemStatus, ActionStatus, ActionType
from playlist_manager.schemas.common import CamelModel

NonEmptyStr = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=128)]


class BulkAddRequest(CamelModel):
    """Add videos to a playlist. One playlistItems.insert (50 units) per video."""

    target_playlist_id: NonEmptyStr = Field(..., description="Playlist receiving the videos")
    video_ids: list[NonEmptyStr] = Field(
        ...,
        min_length=1,
        max_length=MAX_BULK_ITEMS,
        description="Videos to insert, in order",
        examples=[["dQw4w9WgXcQ", "9bZkp7q19f0"]],
    )
    idempotency_key: NonEmptyStr | None = Field(
        default=None,
        description="Replay token. The Idempotency-Key header takes precedence.",
    )


class BulkRemoveRequest(CamelModel):
    """Remove playlist items. One playlistItems.delete (50 units) per item."""

    playlist_item_ids: list[NonEmptyStr] = Field(..., min_length=1, max_length=MAX_BULK_ITEMS)
    idempotency_key: NonEmptyStr | None = None


class MoveItem(CamelModel):
    playlist_item_id: NonEmptyStr
    video_id: NonEmptyStr


class BulkMoveRequest(CamelModel):
    """Move items between playlists: delete from source, insert into target (100 units)."""

    source_playlist_id: NonEmptyStr | None = Field(
        default=None, description="Informational; items are addressed by playlistItemId"
    )
    target_playlist_id: NonEmptyStr
    items: list[MoveItem] = Field(..., min_length=1, max_length=MAX_BULK_ITEMS)
    idempotency_key: NonEmptyStr | None = None


class ActionOut(CamelModel):
    id: str
    type: ActionType
    user_id: str
    created_at: datetime
    status: ActionStatus
    requested_count: int
    quota_cost: int


class ActionItemOut(CamelModel):
    id: int
    position: int
    type: ActionType
    status: ActionItemStatus
    video_id: str | None = None
    source_playlist_item_id: str | None = None
    target_playlist_item_id: str | None = None
    error_reason: str | None = None
    error_message: str | None = None


class CreatedItem(CamelModel):
    playlist_item_id: str | None
    video_id: str | None


class PlaylistItemRef(CamelModel):
    playlist_item_id: str | None


class MovedItem(CamelModel):
    from_: PlaylistItemRef = Field(..., alias="from")
    to: PlaylistItemRef
    video_id: str | None


class RemovedCounts(CamelModel):
    success: int
    failed: int


class BulkResultBase(CamelModel):
    action: ActionOut
    items: list[ActionItemOut]
    estimated_quota: int
    idempotent: bool


class BulkAddResult(BulkResultBase):
    created: list[CreatedItem]


class BulkRemoveResult(BulkResultBase):
    removed: RemovedCounts


class BulkMoveResult(BulkResultBase):
    moved: list[MovedItem]
