"""FastAPI dependencies shared by the API routes.

Services are created once in the application lifespan and stored on
app.state; routes receive them through these dependencies so tests can
substitute them with app.dependency_overrides.

The caller's identity arrives in the X-User-Id header, set by the session
layer in front of this service.
"""

from fastapi import Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from playlist_manager.exceptions import ConfigurationError, UnauthorizedError
from playlist_manager.services.bulk_orchestrator import BulkOrchestrator
from playlist_manager.services.playlist_browser import PlaylistBrowser
from playlist_manager.services.quota_ledger import QuotaLedger


def get_optional_user_id(x_user_id: str | None = Header(default=None)) -> str | None:
    if x_user_id is None or not x_user_id.strip():
        return None
    return x_user_id.strip()


def get_user_id(x_user_id: str | None = Header(default=None)) -> str:
    """Return the authenticated user id.

    Raises:
        UnauthorizedError: If no session is present.
    """
    user_id = get_optional_user_id(x_user_id)
    if user_id is None:
        raise UnauthorizedError("Sign in to continue")
    return user_id


def _from_state(request: Request, name: str):
    service = getattr(request.app.state, name, None)
    if service is None:
        raise ConfigurationError(f"Service not initialized: {name}")
    return service


def get_orchestrator(request: Request) -> BulkOrchestrator:
    return _from_state(request, "orchestrator")


def get_ledger(request: Request) -> QuotaLedger:
    return _from_state(request, "ledger")


def get_browser(request: Request) -> PlaylistBrowser:
    return _from_state(request, "browser")


def ok_response(data: BaseModel) -> JSONResponse:
    """Wrap a response model in the success envelope."""
    return JSONResponse(content={"ok": True, "data": data.model_dump(mode="json", by_alias=True)})
