"""Pydantic schema for GET /api/quota."""

from pydantic import Field

from playlist_manager.schemas.common import CamelModel
from playlist_manager.services.quota_ledger import QuotaSnapshot


class QuotaOut(CamelModel):
    """Today's quota position.

    resetAtISO is the next midnight in America/Los_Angeles with its UTC
    offset, e.g. "2026-10-17T00:00:00-07:00".
    """

    today_used: int
    today_remaining: int
    today_budget: int
    reset_at_iso: str = Field(..., alias="resetAtISO")

    @classmethod
    def from_snapshot(cls, snapshot: QuotaSnapshot) -> "QuotaOut":
        return cls(
            today_used=snapshot.used,
            today_remaining=snapshot.remain,
            today_budget=snapshot.budget,
            reset_at_iso=snapshot.reset_at.isoformat(),
        )
