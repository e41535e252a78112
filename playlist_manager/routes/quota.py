"""Quota route: GET /api/quota.

Signed-out callers still get the budget and reset instant, with zero usage.
"""

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from playlist_manager.routes.deps import get_ledger, get_optional_user_id, ok_response
from playlist_manager.schemas.quota import QuotaOut
from playlist_manager.services.quota_ledger import QuotaLedger, QuotaSnapshot

router = APIRouter(prefix="/api", tags=["quota"])


@router.get("/quota")
async def get_quota(
    user_id: str | None = Depends(get_optional_user_id),
    ledger: QuotaLedger = Depends(get_ledger),
) -> JSONResponse:
    if user_id is None:
        snapshot = QuotaSnapshot(
            used=0,
            remain=ledger.daily_budget,
            budget=ledger.daily_budget,
            reset_at=ledger.next_reset_at(),
        )
    else:
        snapshot = await ledger.get_today_quota(user_id)
    return ok_response(QuotaOut.from_snapshot(snapshot))
