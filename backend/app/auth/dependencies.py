"""
FastAPI dependencies exposing the authenticated API key to route handlers.

Authentication itself happens once per request in
app.middleware.api_key_auth.APIKeyAuthMiddleware, which stores an
ApiKeyContext on `request.state`. Handlers never repeat the lookup:

    Auth = Annotated[ApiKeyContext, Depends(require_api_key_context)]

Security:
  • Handlers only see the ApiKey record (never the secret).
  • On routes where auth is optional the context may be absent;
    get_api_key_context returns None there, require_api_key_context 401s.
"""

from __future__ import annotations

from dataclasses import dataclass

from fastapi import HTTPException, Request, status

from app.models.api_key import ApiKey

STATE_ATTR = "api_key_context"


@dataclass(frozen=True, slots=True)
class ApiKeyContext:
    """Authenticated request context injected into protected routes.

    Attributes:
        api_key:           The validated ApiKey row (as read at validation).
        remaining_daily:   Requests left today after this one, None if unlimited.
        remaining_monthly: Requests left this month after this one, None if unlimited.
    """

    api_key: ApiKey
    remaining_daily: int | None
    remaining_monthly: int | None

    @property
    def key_id(self) -> str:
        return self.api_key.key_id


def get_api_key_context(request: Request) -> ApiKeyContext | None:
    """Context set by the auth middleware, or None for anonymous requests."""
    return getattr(request.state, STATE_ATTR, None)


def require_api_key_context(request: Request) -> ApiKeyContext:
    """Like get_api_key_context, but 401 when the request is anonymous."""
    context = get_api_key_context(request)
    if context is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="API key required.",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return context
