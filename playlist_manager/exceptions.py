"""Shared exceptions for the application.

This module contains the error taxonomy used across services and the HTTP
boundary. Each class carries the error code the API envelope reports, and
ProviderError additionally carries a classified failure reason.

Taxonomy:
    InvalidPayloadError: malformed request, raised before any side effect (400)
    UnauthorizedError / NoTokensError: missing session or provider tokens (401)
    ProviderError: one remote call failed; recorded per item, never aborts a batch
    InternalError: local storage or transaction failure, aborts the request (500)
"""

import enum


class ProviderErrorReason(str, enum.Enum):
    """Classified reason for a failed remote playlist call."""

    QUOTA_EXCEEDED = "quota_exceeded"
    RATE_LIMITED = "rate_limited"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    UNAUTHORIZED = "unauthorized"
    UNKNOWN = "unknown"

    @property
    def http_status(self) -> int:
        """HTTP status reported for this reason at the API boundary."""
        return _REASON_STATUS[self]


_REASON_STATUS = {
    ProviderErrorReason.QUOTA_EXCEEDED: 429,
    ProviderErrorReason.RATE_LIMITED: 429,
    ProviderErrorReason.FORBIDDEN: 403,
    ProviderErrorReason.NOT_FOUND: 404,
    ProviderErrorReason.UNAUTHORIZED: 401,
    ProviderErrorReason.UNKNOWN: 500,
}


class PlaylistManagerError(Exception):
    """Base class for errors surfaced through the API envelope."""

    code = "internal_error"
    status_code = 500


class ConfigurationError(PlaylistManagerError):
    """Raised when required configuration is missing.

    For example the database is not configured, or credential storage is
    used without FERNET_KEY.
    """

    pass


class InvalidPayloadError(PlaylistManagerError):
    """Raised when a request payload is malformed. Surfaced before any side effect."""

    code = "invalid_request"
    status_code = 400


class UnauthorizedError(PlaylistManagerError):
    """Raised when the caller has no session. Terminal, never retried."""

    code = "unauthorized"
    status_code = 401


class NoTokensError(UnauthorizedError):
    """Raised when no provider tokens are stored for the user.

    Attributes:
        user_id: User whose remote-call handle could not be resolved.
    """

    code = "no_tokens"

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__("YouTube authorization missing or expired. Please sign in again.")


class ProviderError(PlaylistManagerError):
    """Raised by the remote playlist client when a call fails.

    Attributes:
        reason: Classified failure reason.
        message: Provider message (may be empty).
        provider_reason: Raw provider reason string, e.g. "quotaExceeded".
    """

    code = "youtube_error"

    def __init__(
        self,
        reason: ProviderErrorReason,
        message: str = "",
        provider_reason: str | None = None,
    ):
        self.reason = reason
        self.message = message or reason.value
        self.provider_reason = provider_reason
        super().__init__(self.message)

    @property
    def status_code(self) -> int:  # type: ignore[override]
        return self.reason.http_status

    def __str__(self) -> str:
        return f"{self.message} (reason={self.reason.value})"


class InternalError(PlaylistManagerError):
    """Raised when a local storage operation or transaction fails.

    The whole request fails and no partial Action is persisted.
    """

    code = "internal_error"
    status_code = 500


class ActionNotFoundError(PlaylistManagerError):
    """Raised when an action id is not present in the action log."""

    code = "not_found"
    status_code = 404

    def __init__(self, action_id: str):
        self.action_id = action_id
        super().__init__(f"Action not found: {action_id}")


class InvalidStateTransitionError(PlaylistManagerError):
    """Raised when attempting an invalid Action status transition.

    Actions move from pending to exactly one terminal status at finalize
    time. Any other change is rejected by Action.validate_status_change().

    Attributes:
        from_status: The current ActionStatus before the attempted transition.
        to_status: The ActionStatus that was attempted but is not valid.
    """

    def __init__(self, message: str, from_status: "ActionStatus", to_status: "ActionStatus"):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(message)

    def __str__(self) -> str:
        base_message = super().__str__()
        return f"{base_message} (from={self.from_status.value}, to={self.to_status.value})"


class ImmutableActionItemError(PlaylistManagerError):
    """Raised when code tries to modify an ActionItem after it was persisted."""

    pass
