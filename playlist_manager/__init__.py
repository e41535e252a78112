"""YouTube Playlist Manager.

This package contains the FastAPI service that performs bulk add, remove
and move mutations against YouTube playlists. It records every submission
in an action log, replays retried submissions by idempotency key and tracks
the provider's daily quota budget in a ledger that rolls over at midnight
Pacific Time.
"""

from playlist_manager.database import async_session_factory, transaction
from playlist_manager.models import Action, ActionItem, Base

__all__ = [
    "Action",
    "ActionItem",
    "Base",
    "async_session_factory",
    "transaction",
]
