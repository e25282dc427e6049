"""
Request accounting middleware — API key auth, quota counting, audit log.

Per request:
  1. Skip entirely for configured routes/methods (docs, health, root, OPTIONS).
  2. Extract the secret: X-API-Key header → Authorization: Bearer → ?apiKey=
  3. No secret → 401 MISSING_API_KEY, unless auth is optional for the route.
  4. validate_api_key() → 403 INVALID_API_KEY with the verdict's reason.
  5. Accepted → increment usage (awaited). The increment re-checks the
     limits; losing a race for the last unit → 403 with the limit reason.
     Database failures are swallowed by the ledger. Then attach
     ApiKeyContext to request.state, run the route, add X-RateLimit-*
     headers, and schedule the audit-log write in the background.
  Any unexpected error while validating → 500 AUTH_ERROR.

Rejected requests are never counted and never logged. Route handlers
downstream of this middleware only ever see accepted (or, on optional
routes, anonymous) traffic.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Sequence

from fastapi import status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.types import ASGIApp

from app.auth.dependencies import STATE_ATTR, ApiKeyContext
from app.auth.errors import APIKeyRejectedError, MissingAPIKeyError
from app.core.database import async_session_factory
from app.services.api_keys import validate_api_key
from app.services.quota import increment_usage, remaining
from app.services.request_log import RequestLogEntry, schedule_request_log

logger = logging.getLogger(__name__)

API_KEY_HEADER = "X-API-Key"
API_KEY_QUERY_PARAM = "apiKey"
UNLIMITED = "unlimited"

HEADER_DAILY_LIMIT = "X-RateLimit-Daily-Limit"
HEADER_DAILY_REMAINING = "X-RateLimit-Daily-Remaining"
HEADER_MONTHLY_LIMIT = "X-RateLimit-Monthly-Limit"
HEADER_MONTHLY_REMAINING = "X-RateLimit-Monthly-Remaining"
RATE_LIMIT_HEADERS = (
    HEADER_DAILY_LIMIT,
    HEADER_DAILY_REMAINING,
    HEADER_MONTHLY_LIMIT,
    HEADER_MONTHLY_REMAINING,
)

_MISSING_MESSAGE = (
    "Please provide an API key via X-API-Key header, "
    "Authorization Bearer token, or apiKey query parameter"
)


# ── Helpers ─────────────────────────────────────────────────
def route_matches(path: str, route: str) -> bool:
    """'/docs*' is a prefix match; '/health' also covers '/health/…'."""
    if route.endswith("*"):
        return path.startswith(route[:-1])
    if route == "/":
        return path == "/"
    return path == route or path.startswith(route + "/")


def extract_api_key(request: Request) -> str | None:
    """Return the first non-empty credential, in priority order."""
    header_key = request.headers.get(API_KEY_HEADER, "").strip()
    if header_key:
        return header_key

    authorization = request.headers.get("Authorization", "")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() == "bearer" and token.strip():
        return token.strip()

    query_key = request.query_params.get(API_KEY_QUERY_PARAM, "").strip()
    return query_key or None


def _int_header(value: str | None) -> int | None:
    try:
        return int(value) if value is not None else None
    except ValueError:
        return None


def _after_this_request(figure: int | None) -> int | None:
    """Validation-time remaining figure, minus the current request."""
    if figure is None:
        return None
    return max(figure - 1, 0)


def _render(value: int | None) -> str:
    return UNLIMITED if value is None else str(value)


def rate_limit_headers(context: ApiKeyContext) -> dict[str, str]:
    return {
        HEADER_DAILY_LIMIT: _render(context.api_key.daily_limit),
        HEADER_DAILY_REMAINING: _render(context.remaining_daily),
        HEADER_MONTHLY_LIMIT: _render(context.api_key.monthly_limit),
        HEADER_MONTHLY_REMAINING: _render(context.remaining_monthly),
    }


def _error(status_code: int, error: str, message: str, code: str) -> JSONResponse:
    headers = {"WWW-Authenticate": "Bearer"} if status_code == 401 else None
    return JSONResponse(
        status_code=status_code,
        content={"error": error, "message": message, "code": code},
        headers=headers,
    )


# ── Middleware ──────────────────────────────────────────────
class APIKeyAuthMiddleware(BaseHTTPMiddleware):
    """Authenticate, count, and log every request that is not skipped."""

    def __init__(
        self,
        app: ASGIApp,
        *,
        required: bool = True,
        skip_routes: Sequence[str] = (),
        skip_methods: Sequence[str] = ("OPTIONS",),
        optional_routes: Sequence[str] = (),
        trust_proxy_headers: bool = False,
        timeout: float | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ) -> None:
        super().__init__(app)
        self.required = required
        self.skip_routes = tuple(skip_routes)
        self.skip_methods = frozenset(method.upper() for method in skip_methods)
        self.optional_routes = tuple(optional_routes)
        self.trust_proxy_headers = trust_proxy_headers
        self.timeout = timeout
        self.session_factory = session_factory or async_session_factory

    # ── Policy ──────────────────────────────────────────────
    def should_skip(self, request: Request) -> bool:
        if request.method.upper() in self.skip_methods:
            return True
        path = request.url.path
        return any(route_matches(path, route) for route in self.skip_routes)

    def auth_required(self, path: str) -> bool:
        if not self.required:
            return False
        return not any(route_matches(path, route) for route in self.optional_routes)

    def client_ip(self, request: Request) -> str | None:
        if self.trust_proxy_headers:
            forwarded = request.headers.get("X-Forwarded-For", "")
            first_hop = forwarded.split(",")[0].strip()
            if first_hop:
                return first_hop
        return request.client.host if request.client else None

    # ── Pipeline ────────────────────────────────────────────
    async def authenticate(self, request: Request, ip_address: str | None) -> ApiKeyContext | None:
        """
        Validate the request's credential and count it.

        Returns None for anonymous requests on routes where auth is optional.

        Raises:
            MissingAPIKeyError:  No credential on a route that needs one.
            APIKeyRejectedError: Validation produced an invalid verdict, or a
                limit ran out before this request could be counted.
        """
        secret = extract_api_key(request)
        if secret is None:
            if self.auth_required(request.url.path):
                raise MissingAPIKeyError(_MISSING_MESSAGE)
            return None

        async with self.session_factory() as session:
            verdict = await asyncio.wait_for(
                validate_api_key(
                    session,
                    secret,
                    ip_address=ip_address,
                    origin=request.headers.get("Origin"),
                ),
                timeout=self.timeout,
            )
        if not verdict.valid or verdict.api_key is None:
            raise APIKeyRejectedError(verdict.reason or "Invalid API key")

        # Counted in its own short transaction, not the one that read the key.
        # The increment re-checks both limits, so concurrent requests cannot
        # overshoot them; QuotaExceededError is an APIKeyRejectedError.
        api_key = verdict.api_key
        async with self.session_factory() as session:
            tally = await increment_usage(session, api_key.key_id, ip_address)

        if tally is None:
            # Not counted (logged in the ledger): report validation-time figures.
            return ApiKeyContext(
                api_key=api_key,
                remaining_daily=_after_this_request(verdict.remaining_daily),
                remaining_monthly=_after_this_request(verdict.remaining_monthly),
            )
        return ApiKeyContext(
            api_key=api_key,
            remaining_daily=remaining(api_key.daily_limit, tally.daily_usage),
            remaining_monthly=remaining(api_key.monthly_limit, tally.monthly_usage),
        )

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if self.should_skip(request):
            return await call_next(request)

        started = time.perf_counter()
        ip_address = self.client_ip(request)

        try:
            context = await self.authenticate(request, ip_address)
        except MissingAPIKeyError as exc:
            return _error(
                status.HTTP_401_UNAUTHORIZED, "API key required", str(exc), "MISSING_API_KEY",
            )
        except APIKeyRejectedError as exc:
            logger.info("Rejected API key on %s %s: %s", request.method, request.url.path, exc.reason)
            return _error(
                status.HTTP_403_FORBIDDEN, "Invalid API key", exc.reason, "INVALID_API_KEY",
            )
        except Exception:
            logger.exception("API key authentication error on %s", request.url.path)
            return _error(
                status.HTTP_500_INTERNAL_SERVER_ERROR,
                "Authentication error",
                "Internal server error during authentication",
                "AUTH_ERROR",
            )

        if context is None:
            return await call_next(request)

        setattr(request.state, STATE_ATTR, context)
        response = await call_next(request)
        response.headers.update(rate_limit_headers(context))

        schedule_request_log(
            self.session_factory,
            RequestLogEntry(
                key_id=context.key_id,
                endpoint=request.url.path,
                method=request.method,
                status_code=response.status_code,
                response_time_ms=int((time.perf_counter() - started) * 1000),
                request_size=_int_header(request.headers.get("Content-Length")) or 0,
                response_size=_int_header(response.headers.get("Content-Length")),
                user_agent=request.headers.get("User-Agent"),
                ip_address=ip_address,
                referer=request.headers.get("Referer"),
            ),
        )
        return response
