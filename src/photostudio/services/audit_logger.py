"""Persistent audit trail for payment, credit, resource, and security events.

Each entry is written to the ``audit_logs`` table through its own short-lived
session and mirrored as a structlog line carrying ``audit=True`` so log
pipelines can filter on it.  Audit logging is best-effort: every failure is
caught and logged, never raised, so it cannot fail the operation it records.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from photostudio.database import async_session_factory
from photostudio.models import AuditLog

log = structlog.get_logger()


class AuditAction:
    AUTH_LOGIN = "auth.login"
    AUTH_SIGNUP = "auth.signup"
    AUTH_FAILED_LOGIN = "auth.failed_login"

    PAYMENT_ORDER_CREATED = "payment.order_created"
    PAYMENT_VERIFIED = "payment.verified"
    PAYMENT_COMPLETED = "payment.completed"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_REFUNDED = "payment.refunded"
    PAYMENT_EXPIRED = "payment.expired"

    CREDITS_PURCHASED = "credits.purchased"
    CREDITS_USED = "credits.used"
    CREDITS_REFUNDED = "credits.refunded"
    CREDITS_ADDED = "credits.added"

    IMAGE_GENERATED = "image.generated"
    IMAGE_UPLOADED = "image.uploaded"
    IMAGE_DELETED = "image.deleted"

    FOLDER_CREATED = "folder.created"
    FOLDER_UPDATED = "folder.updated"
    FOLDER_DELETED = "folder.deleted"

    SECURITY_INVALID_SIGNATURE = "security.invalid_signature"
    SECURITY_RATE_LIMIT_EXCEEDED = "security.rate_limit_exceeded"
    SECURITY_UNAUTHORIZED_ACCESS = "security.unauthorized_access"


class ResourceType:
    USER = "user"
    PAYMENT = "payment"
    CREDIT = "credit"
    IMAGE = "image"
    FOLDER = "folder"
    SESSION = "session"
    SECURITY = "security"


class LogStatus:
    SUCCESS = "success"
    FAILURE = "failure"
    ERROR = "error"


@dataclass(frozen=True)
class RequestContext:
    """Client details captured at the HTTP boundary for audit entries."""

    ip_address: str = "unknown"
    user_agent: str = "unknown"


def _to_uuid(value: Any) -> uuid.UUID | None:
    if value is None or isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def _row_to_dict(entry: AuditLog) -> dict:
    return {
        "id": entry.log_id,
        "user_id": str(entry.user_id) if entry.user_id else None,
        "action": entry.action,
        "resource_type": entry.resource_type,
        "resource_id": entry.resource_id,
        "status": entry.status,
        "ip_address": entry.ip_address,
        "user_agent": entry.user_agent,
        "metadata": entry.meta,
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }


class AuditLogger:
    """Best-effort writer and reader for the ``audit_logs`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._session_factory = session_factory or async_session_factory

    async def log(
        self,
        *,
        action: str,
        resource_type: str,
        user_id: Any = None,
        resource_id: Any = None,
        status: str = LogStatus.SUCCESS,
        metadata: dict | None = None,
        ctx: RequestContext | None = None,
    ) -> int | None:
        """Record one audit event. Returns the new row id, or None on failure."""
        ctx = ctx or RequestContext()
        metadata = metadata or {}

        if not action or not resource_type:
            log.error("audit_log_invalid", action=action, resource_type=resource_type)
            return None

        log.info(
            "audit_event",
            action=action,
            resource_type=resource_type,
            resource_id=str(resource_id) if resource_id is not None else None,
            user_id=str(user_id) if user_id is not None else None,
            status=status,
            ip_address=ctx.ip_address,
            timestamp=datetime.now(timezone.utc).isoformat(),
            audit=True,
        )

        try:
            async with self._session_factory() as session:
                entry = AuditLog(
                    user_id=_to_uuid(user_id),
                    action=action,
                    resource_type=resource_type,
                    resource_id=str(resource_id) if resource_id is not None else None,
                    status=status,
                    ip_address=ctx.ip_address,
                    user_agent=ctx.user_agent,
                    meta=metadata,
                )
                session.add(entry)
                await session.commit()
                return entry.log_id
        except Exception as exc:
            log.error("audit_log_write_failed", action=action, error=str(exc))
            return None

    # ------------------------------------------------------------------
    # Convenience wrappers
    # ------------------------------------------------------------------

    async def log_payment_event(self, user_id, action: str, payment_id, status: str,
                                metadata: dict | None = None, ctx: RequestContext | None = None):
        return await self.log(
            user_id=user_id, action=action, resource_type=ResourceType.PAYMENT,
            resource_id=payment_id, status=status, metadata=metadata, ctx=ctx,
        )

    async def log_credit_event(self, user_id, action: str, transaction_id, status: str,
                               metadata: dict | None = None, ctx: RequestContext | None = None):
        return await self.log(
            user_id=user_id, action=action, resource_type=ResourceType.CREDIT,
            resource_id=transaction_id, status=status, metadata=metadata, ctx=ctx,
        )

    async def log_security_event(self, user_id, action: str, status: str,
                                 metadata: dict | None = None, ctx: RequestContext | None = None):
        return await self.log(
            user_id=user_id, action=action, resource_type=ResourceType.SECURITY,
            status=status, metadata=metadata, ctx=ctx,
        )

    async def log_auth_event(self, user_id, action: str, status: str,
                             metadata: dict | None = None, ctx: RequestContext | None = None):
        return await self.log(
            user_id=user_id, action=action, resource_type=ResourceType.SESSION,
            status=status, metadata=metadata, ctx=ctx,
        )

    async def log_resource_event(self, user_id, action: str, resource_type: str, resource_id,
                                 metadata: dict | None = None, ctx: RequestContext | None = None):
        return await self.log(
            user_id=user_id, action=action, resource_type=resource_type,
            resource_id=resource_id, status=LogStatus.SUCCESS, metadata=metadata, ctx=ctx,
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def _query(self, stmt) -> list[dict]:
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                return [_row_to_dict(entry) for entry in result.scalars().all()]
        except Exception as exc:
            log.error("audit_log_query_failed", error=str(exc))
            return []

    async def get_user_audit_logs(self, user_id: uuid.UUID, limit: int = 50) -> list[dict]:
        return await self._query(
            select(AuditLog)
            .where(AuditLog.user_id == user_id)
            .order_by(AuditLog.created_at.desc(), AuditLog.log_id.desc())
            .limit(limit)
        )

    async def get_user_payment_logs(self, user_id: uuid.UUID, limit: int = 50) -> list[dict]:
        return await self._query(
            select(AuditLog)
            .where(
                AuditLog.user_id == user_id,
                AuditLog.resource_type == ResourceType.PAYMENT,
            )
            .order_by(AuditLog.created_at.desc(), AuditLog.log_id.desc())
            .limit(limit)
        )

    async def get_recent_security_events(self, limit: int = 100) -> list[dict]:
        return await self._query(
            select(AuditLog)
            .where(
                or_(
                    AuditLog.action.like("security.%"),
                    AuditLog.status == LogStatus.FAILURE,
                )
            )
            .order_by(AuditLog.created_at.desc(), AuditLog.log_id.desc())
            .limit(limit)
        )


audit_logger = AuditLogger()
