"""Provider constants shared across services.

YouTube Data API v3 charges a fixed number of quota units per method call,
regardless of whether the call succeeds. Daily quota resets at midnight
Pacific Time, so every day key in the ledger is computed in that zone.
"""

# Fixed rollover timezone (YouTube quota reset). Not configurable.
QUOTA_TIMEZONE = "America/Los_Angeles"

# Quota scope that accumulates every call, regardless of user
GLOBAL_SCOPE = "global"

# YouTube Data API v3 method costs
METHOD_COST: dict[str, int] = {
    "playlistItems.list": 1,
    "playlistItems.insert": 50,
    "playlistItems.delete": 50,
    "playlists.list": 1,
}

INSERT_COST = METHOD_COST["playlistItems.insert"]
DELETE_COST = METHOD_COST["playlistItems.delete"]
LIST_COST = METHOD_COST["playlistItems.list"]

# delete from source + insert into target
MOVE_COST = DELETE_COST + INSERT_COST

# Upper bound on targets per bulk request
MAX_BULK_ITEMS = 200

# Page size for list calls (YouTube maximum)
PROVIDER_PAGE_SIZE = 50
