"""Shared FastAPI dependencies: session user, clients, audit, rate limits."""

from __future__ import annotations

from fastapi import Cookie, Depends, Request, Response
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from photostudio.database import get_db
from photostudio.errors import AuthError, RateLimitError
from photostudio.integrations.gemini_client import GeminiImageClient
from photostudio.integrations.razorpay_gateway import RazorpayGateway
from photostudio.models import User
from photostudio.services.audit_logger import (
    AuditAction,
    AuditLogger,
    LogStatus,
    RequestContext,
    audit_logger,
)
from photostudio.services.auth_service import get_or_create_user, verify_token
from photostudio.services.rate_limiter import (
    RATE_LIMITS,
    InMemoryRateLimiter,
    create_rate_limit_key,
    rate_limit_headers,
)
from photostudio.services.validation import get_ip_address, get_user_agent

# Optional bearer scheme -- auto_error=False so we can fall back to cookies
bearer_scheme = HTTPBearer(auto_error=False)

# Used when the app lifespan has not installed a limiter (e.g. under test transports).
_default_rate_limiter = InMemoryRateLimiter()


def get_request_context(request: Request) -> RequestContext:
    return RequestContext(
        ip_address=get_ip_address(request.headers),
        user_agent=get_user_agent(request.headers),
    )


def get_audit_logger() -> AuditLogger:
    return audit_logger


def get_gateway() -> RazorpayGateway:
    return RazorpayGateway()


def get_image_client() -> GeminiImageClient:
    return GeminiImageClient()


def get_rate_limiter(request: Request):
    return getattr(request.app.state, "rate_limiter", None) or _default_rate_limiter


def extract_token(
    credentials: HTTPAuthorizationCredentials | None,
    cookie_token: str | None,
) -> str | None:
    if credentials is not None and credentials.credentials:
        return credentials.credentials
    return cookie_token or None


async def get_current_user(
    db: AsyncSession = Depends(get_db),
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    sb_access_token: str | None = Cookie(default=None, alias="sb-access-token"),
    audit: AuditLogger = Depends(get_audit_logger),
    ctx: RequestContext = Depends(get_request_context),
) -> User:
    """Resolve the Supabase session to a User, provisioning on first sight.

    Token sources (checked in order):
      1. Authorization: Bearer <token> header
      2. ``sb-access-token`` cookie
    """
    token = extract_token(credentials, sb_access_token)
    if token is None:
        raise AuthError(headers={"WWW-Authenticate": "Bearer"})

    claims = verify_token(token)
    user, _ = await get_or_create_user(db, claims, audit, ctx)
    return user


def rate_limit(endpoint: str, rule_name: str, per_user: bool = True):
    """Dependency factory enforcing ``RATE_LIMITS[rule_name]`` on *endpoint*.

    With ``per_user`` the key is the authenticated user id; otherwise the
    client IP.  Exceeded limits are audit-logged and raise RateLimitError.
    """
    rule = RATE_LIMITS[rule_name]

    async def _user_key(user: User = Depends(get_current_user)) -> str:
        return str(user.user_id)

    async def _no_user() -> None:
        return None

    async def dependency(
        request: Request,
        response: Response,
        user_key: str | None = Depends(_user_key if per_user else _no_user),
        ctx: RequestContext = Depends(get_request_context),
        audit: AuditLogger = Depends(get_audit_logger),
    ) -> None:
        limiter = get_rate_limiter(request)
        key = create_rate_limit_key(endpoint, user_key, ctx.ip_address)
        result = await limiter.check(key, rule)
        headers = rate_limit_headers(result)

        if result.exceeded:
            retry_after = result.retry_after()
            await audit.log_security_event(
                user_key, AuditAction.SECURITY_RATE_LIMIT_EXCEEDED, LogStatus.FAILURE,
                {"endpoint": endpoint, "limit": result.limit, "key": key}, ctx,
            )
            raise RateLimitError(
                headers={**headers, "Retry-After": str(retry_after)},
                extra={"retryAfter": retry_after},
            )

        for name, value in headers.items():
            response.headers[name] = value

    return dependency
