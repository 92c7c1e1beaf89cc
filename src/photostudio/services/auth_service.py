"""Authentication service: Supabase session tokens and user provisioning."""

from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import UUID

import structlog
from jose import JWTError, jwt
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from photostudio.config import settings
from photostudio.errors import AuthError
from photostudio.models import TxnType, User
from photostudio.services.audit_logger import AuditAction, AuditLogger, LogStatus, RequestContext
from photostudio.services.credit_service import add_credits

log = structlog.get_logger()

_ALGORITHMS = ["HS256"]


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    id: UUID
    email: str
    name: Optional[str] = None
    avatar_url: Optional[str] = None
    credits: int
    created_at: datetime


class SessionResponse(BaseModel):
    user: UserResponse
    created: bool


def to_user_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.user_id,
        email=user.email,
        name=user.name,
        avatar_url=user.avatar_url,
        credits=user.credits,
        created_at=user.created_at,
    )


# ---------------------------------------------------------------------------
# Token verification
# ---------------------------------------------------------------------------


def verify_token(token: str) -> dict:
    """Decode and validate a Supabase access token. Raises AuthError (401)."""
    if not settings.SUPABASE_JWT_SECRET:
        log.error("auth_secret_missing")
        raise AuthError()
    try:
        payload = jwt.decode(
            token,
            settings.SUPABASE_JWT_SECRET,
            algorithms=_ALGORITHMS,
            audience=settings.SUPABASE_JWT_AUDIENCE,
        )
    except JWTError:
        raise AuthError("Invalid or expired session")

    sub = payload.get("sub")
    try:
        UUID(str(sub))
    except ValueError:
        raise AuthError("Invalid or expired session")
    if not payload.get("email"):
        raise AuthError("Session is missing an email address")
    return payload


# ---------------------------------------------------------------------------
# Service functions
# ---------------------------------------------------------------------------


def _profile_from_claims(claims: dict) -> dict:
    metadata = claims.get("user_metadata") or {}
    return {
        "email": claims["email"].lower().strip(),
        "name": metadata.get("full_name") or metadata.get("name"),
        "avatar_url": metadata.get("avatar_url") or metadata.get("picture"),
    }


async def get_or_create_user(
    db: AsyncSession,
    claims: dict,
    audit: AuditLogger | None = None,
    ctx: RequestContext | None = None,
) -> tuple[User, bool]:
    """Return the user for verified *claims*, provisioning them on first sight.

    New users receive ``DEFAULT_CREDITS`` through the ledger so the bonus has
    its own ``credit_transactions`` row.  Returns ``(user, created)``.
    """
    user_id = UUID(str(claims["sub"]))
    result = await db.execute(select(User).where(User.user_id == user_id))
    user = result.scalar_one_or_none()
    if user is not None:
        return user, False

    profile = _profile_from_claims(claims)
    try:
        db.add(User(user_id=user_id, credits=0, **profile))
        await db.flush()
        if settings.DEFAULT_CREDITS > 0:
            await add_credits(
                db, user_id, settings.DEFAULT_CREDITS, TxnType.BONUS,
                description="Welcome bonus credits",
            )
        await db.commit()
    except IntegrityError:
        # A concurrent first request provisioned the same user.
        await db.rollback()
        result = await db.execute(select(User).where(User.user_id == user_id))
        user = result.scalar_one_or_none()
        if user is None:
            raise AuthError("Unable to provision account")
        return user, False

    result = await db.execute(
        select(User).where(User.user_id == user_id).execution_options(populate_existing=True)
    )
    user = result.scalar_one()
    log.info("user_provisioned", user_id=str(user_id), bonus=settings.DEFAULT_CREDITS)

    if audit is not None:
        await audit.log_auth_event(
            user_id, AuditAction.AUTH_SIGNUP, LogStatus.SUCCESS,
            {"email": profile["email"], "bonus_credits": settings.DEFAULT_CREDITS}, ctx,
        )
    return user, True
