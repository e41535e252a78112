"""Remote provider clients."""

from playlist_manager.clients.youtube import (
    PlaylistPage,
    PlaylistProvider,
    ProviderFactory,
    YouTubePlaylistClient,
)

__all__ = [
    "PlaylistPage",
    "PlaylistProvider",
    "ProviderFactory",
    "YouTubePlaylistClient",
]
