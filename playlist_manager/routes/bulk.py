"""Bulk playlist mutation routes.

- POST /api/bulk/add     {targetPlaylistId, videoIds[], idempotencyKey?}
- POST /api/bulk/remove  {playlistItemIds[], idempotencyKey?}
- POST /api/bulk/move    {targetPlaylistId, items[{playlistItemId, videoId}], idempotencyKey?}

Pattern:
- Payload validated by Pydantic before any side effect (400 invalid_request)
- User from X-User-Id (401 unauthorized)
- Idempotency-Key header wins over the body's idempotencyKey
- Partial batches return 200 with action.status == "partial"
"""

from typing import Any

from fastapi import APIRouter, Depends, Header
from fastapi.responses import JSONResponse

from playlist_manager.routes.deps import get_orchestrator, get_user_id, ok_response
from playlist_manager.schemas.bulk import (
    ActionItemOut,
    ActionOut,
    BulkAddRequest,
    BulkAddResult,
    BulkMoveRequest,
    BulkMoveResult,
    BulkRemoveRequest,
    BulkRemoveResult,
)
from playlist_manager.services.bulk_orchestrator import BulkOrchestrator, BulkResult, MoveTarget

router = APIRouter(prefix="/api/bulk", tags=["bulk"])


def _resolve_key(header_key: str | None, body_key: str | None) -> str | None:
    if header_key and header_key.strip():
        return header_key.strip()
    return body_key or None


def _result_fields(result: BulkResult) -> dict[str, Any]:
    return {
        "action": ActionOut.model_validate(result.action),
        "items": [ActionItemOut.model_validate(item) for item in result.items],
        "estimated_quota": result.estimated_quota,
        "idempotent": result.idempotent,
    }


@router.post("/add")
async def bulk_add(
    payload: BulkAddRequest,
    user_id: str = Depends(get_user_id),
    orchestrator: BulkOrchestrator = Depends(get_orchestrator),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
) -> JSONResponse:
    result = await orchestrator.bulk_add(
        user_id,
        payload.target_playlist_id,
        payload.video_ids,
        idempotency_key=_resolve_key(idempotency_key, payload.idempotency_key),
    )
    return ok_response(BulkAddResult(**_result_fields(result), created=result.created))


@router.post("/remove")
async def bulk_remove(
    payload: BulkRemoveRequest,
    user_id: str = Depends(get_user_id),
    orchestrator: BulkOrchestrator = Depends(get_orchestrator),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
) -> JSONResponse:
    result = await orchestrator.bulk_remove(
        user_id,
        payload.playlist_item_ids,
        idempotency_key=_resolve_key(idempotency_key, payload.idempotency_key),
    )
    return ok_response(BulkRemoveResult(**_result_fields(result), removed=result.removed))


@router.post("/move")
async def bulk_move(
    payload: BulkMoveRequest,
    user_id: str = Depends(get_user_id),
    orchestrator: BulkOrchestrator = Depends(get_orchestrator),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
) -> JSONResponse:
    result = await orchestrator.bulk_move(
        user_id,
        payload.target_playlist_id,
        [MoveTarget(item.playlist_item_id, item.video_id) for item in payload.items],
        idempotency_key=_resolve_key(idempotency_key, payload.idempotency_key),
    )
    return ok_response(BulkMoveResult(**_result_fields(result), moved=result.moved))
