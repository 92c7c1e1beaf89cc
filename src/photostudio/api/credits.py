"""Credit balance and ledger endpoints -- /api/credits."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from photostudio.api.dependencies import (
    get_audit_logger,
    get_current_user,
    get_request_context,
    rate_limit,
)
from photostudio.config import settings
from photostudio.database import get_db
from photostudio.errors import NotFoundError
from photostudio.models import TxnType, User
from photostudio.services.audit_logger import AuditAction, AuditLogger, LogStatus, RequestContext
from photostudio.services.credit_service import add_credits, get_balance, get_credit_history
from photostudio.services.validation import AddCreditsRequest, read_json_body, require_valid

router = APIRouter(prefix="/api/credits", tags=["credits"])


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.get("", dependencies=[Depends(rate_limit("credits", "API_GENERAL"))])
async def read_credits(
    action: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Return the balance, or the ledger history with ``?action=history``."""
    if action == "history":
        history = await get_credit_history(db, current_user.user_id, limit, offset)
        return {"history": [entry.model_dump(mode="json") for entry in history]}
    return {"credits": await get_balance(db, current_user.user_id)}


@router.post("", dependencies=[Depends(rate_limit("credits", "API_GENERAL"))])
async def grant_credits(
    request: Request,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    audit: AuditLogger = Depends(get_audit_logger),
    ctx: RequestContext = Depends(get_request_context),
):
    """Manually grant credits to the caller. Sandbox stage only."""
    if settings.PAYMENT_STAGE != "sandbox":
        await audit.log_security_event(
            current_user.user_id, AuditAction.SECURITY_UNAUTHORIZED_ACCESS, LogStatus.FAILURE,
            {"endpoint": "POST /api/credits"}, ctx,
        )
        raise NotFoundError("Not found")

    body = require_valid(AddCreditsRequest, await read_json_body(request))
    user_id = current_user.user_id
    new_balance = await add_credits(
        db, user_id, body.amount, TxnType.BONUS,
        description=body.description or "Manual credit grant",
    )
    await db.commit()

    await audit.log_credit_event(
        user_id, AuditAction.CREDITS_ADDED, None, LogStatus.SUCCESS,
        {"amount": body.amount, "new_balance": new_balance}, ctx,
    )
    return {"success": True, "credits": new_balance}
