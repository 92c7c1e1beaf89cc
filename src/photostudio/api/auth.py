"""Session endpoint -- /api/auth/*."""

from __future__ import annotations

from fastapi import APIRouter, Cookie, Depends
from fastapi.security import HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession

from photostudio.api.dependencies import (
    bearer_scheme,
    extract_token,
    get_audit_logger,
    get_current_user,
    get_request_context,
    rate_limit,
)
from photostudio.database import get_db
from photostudio.errors import AuthError
from photostudio.models import User
from photostudio.services.audit_logger import AuditAction, AuditLogger, LogStatus, RequestContext
from photostudio.services.auth_service import (
    SessionResponse,
    UserResponse,
    get_or_create_user,
    to_user_response,
    verify_token,
)

router = APIRouter(prefix="/api/auth", tags=["auth"])


@router.post(
    "/session",
    response_model=SessionResponse,
    dependencies=[Depends(rate_limit("auth", "AUTH", per_user=False))],
)
async def create_session(
    db: AsyncSession = Depends(get_db),
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    sb_access_token: str | None = Cookie(default=None, alias="sb-access-token"),
    audit: AuditLogger = Depends(get_audit_logger),
    ctx: RequestContext = Depends(get_request_context),
) -> SessionResponse:
    """Exchange a Supabase access token for the user profile.

    Provisions the account with the signup bonus on first use.
    """
    token = extract_token(credentials, sb_access_token)
    try:
        if token is None:
            raise AuthError(headers={"WWW-Authenticate": "Bearer"})
        claims = verify_token(token)
    except AuthError as exc:
        await audit.log_auth_event(
            None, AuditAction.AUTH_FAILED_LOGIN, LogStatus.FAILURE,
            {"reason": exc.message}, ctx,
        )
        raise

    user, created = await get_or_create_user(db, claims, audit, ctx)
    if not created:
        await audit.log_auth_event(user.user_id, AuditAction.AUTH_LOGIN, LogStatus.SUCCESS, {}, ctx)
    return SessionResponse(user=to_user_response(user), created=created)


@router.get("/me", response_model=UserResponse)
async def me(current_user: User = Depends(get_current_user)) -> UserResponse:
    """Return the authenticated user's profile."""
    return to_user_response(current_user)
