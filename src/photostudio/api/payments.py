"""Razorpay payment endpoints -- /api/payments/*."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from photostudio.api.dependencies import (
    get_audit_logger,
    get_current_user,
    get_gateway,
    get_request_context,
    rate_limit,
)
from photostudio.database import get_db
from photostudio.integrations.razorpay_gateway import RazorpayGateway
from photostudio.models import User
from photostudio.services.audit_logger import AuditLogger, RequestContext
from photostudio.services.payment_service import (
    PaymentHistoryResponse,
    create_order,
    get_payment_history,
    handle_webhook,
    verify_payment,
)
from photostudio.services.validation import read_json_body

router = APIRouter(prefix="/api/payments", tags=["payments"])


@router.post(
    "/create-order",
    dependencies=[Depends(rate_limit("payment-create", "PAYMENT_CREATE"))],
)
async def create_payment_order(
    request: Request,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    gateway: RazorpayGateway = Depends(get_gateway),
    audit: AuditLogger = Depends(get_audit_logger),
    ctx: RequestContext = Depends(get_request_context),
):
    """Create a Razorpay order and a pending payment record."""
    body = await read_json_body(request)
    return await create_order(db, gateway, audit, current_user, body, ctx)


@router.post(
    "/verify",
    dependencies=[Depends(rate_limit("payment-verify", "PAYMENT_VERIFY"))],
)
async def verify_payment_callback(
    request: Request,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    gateway: RazorpayGateway = Depends(get_gateway),
    audit: AuditLogger = Depends(get_audit_logger),
    ctx: RequestContext = Depends(get_request_context),
):
    """Verify the checkout signature and credit the purchase exactly once."""
    body = await read_json_body(request)
    return await verify_payment(db, gateway, audit, current_user, body, ctx)


@router.get("/history", response_model=PaymentHistoryResponse)
async def payment_history(
    limit: int = Query(20),
    offset: int = Query(0),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Return the authenticated user's payments, newest first."""
    return await get_payment_history(db, current_user.user_id, limit, offset)


@router.post("/webhook")
async def razorpay_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    audit: AuditLogger = Depends(get_audit_logger),
    ctx: RequestContext = Depends(get_request_context),
):
    """Receive Razorpay webhook events.

    The signature is checked against the raw body before any parsing.
    """
    payload = await request.body()
    signature = request.headers.get("x-razorpay-signature")
    return await handle_webhook(db, audit, payload, signature, ctx)
