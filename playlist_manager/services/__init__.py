"""Service layer: quota ledger, idempotency, action log and bulk orchestration."""

from playlist_manager.services.action_log import ActionLog, ActionSummary, NewActionItem
from playlist_manager.services.bulk_orchestrator import BulkOrchestrator, BulkResult, MoveTarget
from playlist_manager.services.idempotency import IdempotencyGuard
from playlist_manager.services.playlist_browser import BrowseResult, PlaylistBrowser
from playlist_manager.services.quota_ledger import QuotaLedger, QuotaSnapshot

__all__ = [
    "ActionLog",
    "ActionSummary",
    "BrowseResult",
    "BulkOrchestrator",
    "BulkResult",
    "IdempotencyGuard",
    "MoveTarget",
    "NewActionItem",
    "PlaylistBrowser",
    "QuotaLedger",
    "QuotaSnapshot",
]
