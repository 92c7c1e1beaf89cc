"""Razorpay payment flow -- order creation, verification, and webhook handling.

Client-side verification and the ``payment.captured`` webhook race to
complete the same payment.  Both go through ``complete_payment``, which flips
the row out of ``created`` with a conditional UPDATE and applies the credit
in the same transaction, so at most one of them ever credits the user.
Audit entries are written only after the request's own transaction has
committed.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Optional

import structlog
from pydantic import BaseModel
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from photostudio.config import settings
from photostudio.errors import (
    AppError,
    ConflictError,
    GatewayError,
    LedgerConsistencyError,
    NotFoundError,
    SignatureError,
    ValidationError,
    WebhookSignatureError,
)
from photostudio.integrations.razorpay_gateway import (
    RazorpayGateway,
    verify_payment_signature,
    verify_webhook_signature,
)
from photostudio.models import Payment, PaymentStatus, TxnType, User
from photostudio.services.audit_logger import (
    AuditAction,
    AuditLogger,
    LogStatus,
    RequestContext,
)
from photostudio.services.credit_service import add_credits, deduct_credits_floored, get_balance
from photostudio.services.validation import (
    CreatePaymentRequest,
    VerifyPaymentRequest,
    require_valid,
)

log = structlog.get_logger()


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------

class PaymentResponse(BaseModel):
    id: uuid.UUID
    razorpay_order_id: str
    razorpay_payment_id: Optional[str] = None
    amount_usd: float
    amount_inr: float
    credits_purchased: int
    status: str
    payment_method: Optional[str] = None
    payment_stage: str
    error_message: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None


class PaymentHistoryResponse(BaseModel):
    payments: list[PaymentResponse]
    total: int
    limit: int
    offset: int


@dataclass(frozen=True)
class CompletionResult:
    applied: bool
    credits_added: int = 0
    new_balance: Optional[int] = None


# ---------------------------------------------------------------------------
# Order creation
# ---------------------------------------------------------------------------

async def create_order(
    db: AsyncSession,
    gateway: RazorpayGateway,
    audit: AuditLogger,
    user: User,
    raw_body: Any,
    ctx: RequestContext,
) -> dict:
    """Validate the amount, create the remote order, persist a ``created`` payment."""
    user_id, email, name = user.user_id, user.email, user.name
    request = require_valid(CreatePaymentRequest, raw_body)

    try:
        order = await gateway.create_order(request.amount_usd, str(user_id), email)
    except GatewayError:
        await audit.log_payment_event(
            user_id, AuditAction.PAYMENT_ORDER_CREATED, None, LogStatus.ERROR,
            {"amount_usd": request.amount_usd, "error": "gateway order creation failed"}, ctx,
        )
        raise

    payment_id = uuid.uuid4()
    try:
        db.add(Payment(
            payment_id=payment_id,
            user_id=user_id,
            razorpay_order_id=order.order_id,
            amount_usd=Decimal(str(order.amount_usd)).quantize(Decimal("0.0001")),
            amount_inr=Decimal(str(order.amount_inr)).quantize(Decimal("0.01")),
            credits_purchased=order.credits,
            status=PaymentStatus.CREATED,
            payment_stage=order.payment_stage,
            meta={"receipt_amount_paise": order.amount_paise, "user_email": email},
        ))
        await db.commit()
    except Exception as exc:
        # The remote order exists without a local row and lapses upstream.
        await db.rollback()
        log.error("payment_record_insert_failed", order_id=order.order_id,
                  user_id=str(user_id), error=str(exc))
        payment_id = None

    await audit.log_payment_event(
        user_id, AuditAction.PAYMENT_ORDER_CREATED, payment_id,
        LogStatus.SUCCESS if payment_id else LogStatus.ERROR,
        {
            "razorpay_order_id": order.order_id,
            "amount_usd": order.amount_usd,
            "amount_inr": order.amount_inr,
            "credits": order.credits,
            "payment_stage": order.payment_stage,
        },
        ctx,
    )
    log.info("payment_order_created", order_id=order.order_id, user_id=str(user_id),
             credits=order.credits)

    return {
        "success": True,
        "orderId": order.order_id,
        "amount": order.amount_usd,
        "amountPaise": order.amount_paise,
        "amountInr": order.amount_inr,
        "currency": order.currency,
        "credits": order.credits,
        "keyId": settings.public_key_id,
        "paymentStage": order.payment_stage,
        "prefill": {"name": name or "", "email": email},
        "notes": {"userId": str(user_id), "credits": order.credits},
    }


# ---------------------------------------------------------------------------
# Atomic completion
# ---------------------------------------------------------------------------

async def complete_payment(
    db: AsyncSession,
    payment: Payment,
    razorpay_payment_id: str,
    signature: str | None = None,
    payment_method: str | None = None,
    extra_metadata: dict | None = None,
) -> CompletionResult:
    """Flip ``created -> completed`` and credit the user in one transaction.

    Zero rows from the conditional UPDATE means another request already moved
    the payment out of ``created``; nothing is credited and ``applied`` is
    False.  Commits on success, rolls back and re-raises on failure.
    """
    # Rollback expires ORM state, so read everything needed up front.
    payment_id = payment.payment_id
    user_id = payment.user_id
    credits = payment.credits_purchased
    meta = dict(payment.meta or {})
    meta.update(extra_metadata or {})

    try:
        result = await db.execute(
            update(Payment)
            .where(
                Payment.payment_id == payment_id,
                Payment.status == PaymentStatus.CREATED,
            )
            .values(
                status=PaymentStatus.COMPLETED,
                razorpay_payment_id=razorpay_payment_id,
                razorpay_signature=signature,
                payment_method=payment_method,
                completed_at=datetime.now(timezone.utc),
                meta=meta,
            )
            .returning(Payment.payment_id)
        )
        if result.scalar_one_or_none() is None:
            await db.commit()
            return CompletionResult(applied=False)

        new_balance = await add_credits(
            db,
            user_id,
            credits,
            TxnType.PURCHASE,
            description=f"Purchased {credits} credits",
            payment_id=payment_id,
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    log.info("payment_completed", payment_id=str(payment_id), credits=credits,
             new_balance=new_balance)
    return CompletionResult(applied=True, credits_added=credits, new_balance=new_balance)


async def _current_status(db: AsyncSession, payment_id: uuid.UUID) -> str | None:
    result = await db.execute(select(Payment.status).where(Payment.payment_id == payment_id))
    return result.scalar_one_or_none()


async def _mark_failed(
    db: AsyncSession,
    payment_id: uuid.UUID,
    error_message: str,
    razorpay_payment_id: str | None = None,
    meta: dict | None = None,
) -> bool:
    """``created -> failed``; never regresses a payment that already left ``created``."""
    values: dict[str, Any] = {"status": PaymentStatus.FAILED, "error_message": error_message}
    if razorpay_payment_id:
        values["razorpay_payment_id"] = razorpay_payment_id
    if meta is not None:
        values["meta"] = meta

    result = await db.execute(
        update(Payment)
        .where(
            Payment.payment_id == payment_id,
            Payment.status == PaymentStatus.CREATED,
        )
        .values(**values)
        .returning(Payment.payment_id)
    )
    changed = result.scalar_one_or_none() is not None
    await db.commit()
    return changed


# ---------------------------------------------------------------------------
# Client-side verification
# ---------------------------------------------------------------------------

def _already_processed(payment_id: uuid.UUID, credits: int, balance: int) -> dict:
    return {
        "success": True,
        "message": "Payment already processed",
        "creditsAdded": credits,
        "totalCredits": balance,
        "paymentId": str(payment_id),
        "alreadyProcessed": True,
    }


async def verify_payment(
    db: AsyncSession,
    gateway: RazorpayGateway,
    audit: AuditLogger,
    user: User,
    raw_body: Any,
    ctx: RequestContext,
) -> dict:
    """Verify the checkout callback and credit the purchase exactly once."""
    user_id = user.user_id
    request = require_valid(VerifyPaymentRequest, raw_body)
    order_id = request.razorpay_order_id
    rzp_payment_id = request.razorpay_payment_id

    if not verify_payment_signature(order_id, rzp_payment_id, request.razorpay_signature):
        log.warning("payment_signature_invalid", order_id=order_id, user_id=str(user_id))
        await audit.log_security_event(
            user_id, AuditAction.SECURITY_INVALID_SIGNATURE, LogStatus.FAILURE,
            {"razorpay_order_id": order_id, "razorpay_payment_id": rzp_payment_id,
             "reason": "Invalid payment signature"},
            ctx,
        )
        raise SignatureError()

    result = await db.execute(
        select(Payment).where(
            Payment.razorpay_order_id == order_id,
            Payment.user_id == user_id,
        )
    )
    payment = result.scalar_one_or_none()
    if payment is None:
        raise NotFoundError("Payment record not found")

    payment_id = payment.payment_id
    credits = payment.credits_purchased
    amount_usd = float(payment.amount_usd)

    if payment.status == PaymentStatus.COMPLETED:
        return _already_processed(payment_id, credits, await get_balance(db, user_id))
    if payment.status != PaymentStatus.CREATED:
        raise ConflictError(f"Payment is {payment.status} and cannot be completed")

    payment_method = None
    try:
        details = await gateway.fetch_payment_details(rzp_payment_id)
        payment_method = details.get("method") if isinstance(details, dict) else None
    except GatewayError:
        log.warning("payment_details_unavailable", razorpay_payment_id=rzp_payment_id)

    try:
        completion = await complete_payment(
            db, payment, rzp_payment_id,
            signature=request.razorpay_signature,
            payment_method=payment_method,
            extra_metadata={"verified_via": "client"},
        )
    except Exception as exc:
        log.exception("payment_completion_failed", payment_id=str(payment_id))
        if await _current_status(db, payment_id) == PaymentStatus.COMPLETED:
            return _already_processed(payment_id, credits, await get_balance(db, user_id))

        await _mark_failed(db, payment_id, "Failed to add credits", rzp_payment_id)
        await audit.log_payment_event(
            user_id, AuditAction.PAYMENT_FAILED, payment_id, LogStatus.ERROR,
            {"razorpay_order_id": order_id, "razorpay_payment_id": rzp_payment_id,
             "error": str(exc)},
            ctx,
        )
        raise LedgerConsistencyError()

    if not completion.applied:
        status = await _current_status(db, payment_id)
        if status == PaymentStatus.COMPLETED:
            log.info("payment_completed_elsewhere", payment_id=str(payment_id))
            return _already_processed(payment_id, credits, await get_balance(db, user_id))
        raise ConflictError(f"Payment is {status} and cannot be completed")

    await audit.log_payment_event(
        user_id, AuditAction.PAYMENT_COMPLETED, payment_id, LogStatus.SUCCESS,
        {"razorpay_order_id": order_id, "razorpay_payment_id": rzp_payment_id,
         "amount_usd": amount_usd, "credits": completion.credits_added,
         "payment_method": payment_method, "processed_via": "verification"},
        ctx,
    )
    await audit.log_credit_event(
        user_id, AuditAction.CREDITS_PURCHASED, payment_id, LogStatus.SUCCESS,
        {"credits": completion.credits_added, "new_balance": completion.new_balance},
        ctx,
    )

    return {
        "success": True,
        "message": "Payment verified successfully",
        "creditsAdded": completion.credits_added,
        "totalCredits": completion.new_balance,
        "paymentId": str(payment_id),
    }


# ---------------------------------------------------------------------------
# Webhook handlers
# ---------------------------------------------------------------------------

async def _payment_by_order(db: AsyncSession, order_id: str | None) -> Payment | None:
    if not order_id:
        return None
    result = await db.execute(select(Payment).where(Payment.razorpay_order_id == order_id))
    return result.scalar_one_or_none()


async def _handle_payment_captured(db, audit: AuditLogger, entity: dict, ctx: RequestContext) -> None:
    order_id = entity.get("order_id")
    rzp_payment_id = entity.get("id")
    payment = await _payment_by_order(db, order_id)
    if payment is None:
        log.error("webhook_payment_not_found", order_id=order_id)
        return

    payment_id, user_id = payment.payment_id, payment.user_id
    amount_usd = float(payment.amount_usd)
    if payment.status == PaymentStatus.COMPLETED:
        log.info("webhook_payment_already_processed", order_id=order_id)
        return
    if payment.status != PaymentStatus.CREATED:
        log.warning("webhook_capture_ignored", order_id=order_id, status=payment.status)
        await audit.log_payment_event(
            user_id, AuditAction.PAYMENT_COMPLETED, payment_id, LogStatus.ERROR,
            {"razorpay_order_id": order_id, "razorpay_payment_id": rzp_payment_id,
             "error": f"capture received for {payment.status} payment"},
            ctx,
        )
        return

    try:
        completion = await complete_payment(
            db, payment, rzp_payment_id,
            payment_method=entity.get("method"),
            extra_metadata={"webhook_processed": True, "razorpay_payment_entity": entity},
        )
    except Exception as exc:
        log.exception("webhook_completion_failed", order_id=order_id)
        await audit.log_payment_event(
            user_id, AuditAction.PAYMENT_FAILED, payment_id, LogStatus.ERROR,
            {"error": "Webhook failed to add credits", "detail": str(exc),
             "razorpay_order_id": order_id, "razorpay_payment_id": rzp_payment_id},
            ctx,
        )
        return

    if not completion.applied:
        log.info("webhook_payment_completed_elsewhere", order_id=order_id)
        return

    await audit.log_payment_event(
        user_id, AuditAction.PAYMENT_COMPLETED, payment_id, LogStatus.SUCCESS,
        {"razorpay_order_id": order_id, "razorpay_payment_id": rzp_payment_id,
         "amount_usd": amount_usd, "credits": completion.credits_added,
         "processed_via": "webhook"},
        ctx,
    )


async def _handle_payment_failed(db, audit: AuditLogger, entity: dict, ctx: RequestContext) -> None:
    order_id = entity.get("order_id")
    rzp_payment_id = entity.get("id")
    error_description = entity.get("error_description") or "Payment failed"

    payment = await _payment_by_order(db, order_id)
    if payment is None:
        log.error("webhook_failed_payment_not_found", order_id=order_id)
        return
    if payment.status == PaymentStatus.COMPLETED:
        log.info("webhook_failed_event_ignored", order_id=order_id)
        return

    payment_id, user_id = payment.payment_id, payment.user_id
    meta = {
        **(payment.meta or {}),
        "failure_reason": entity.get("error_reason"),
        "error_code": entity.get("error_code"),
    }
    if not await _mark_failed(db, payment_id, error_description, rzp_payment_id, meta):
        return

    await audit.log_payment_event(
        user_id, AuditAction.PAYMENT_FAILED, payment_id, LogStatus.FAILURE,
        {"razorpay_order_id": order_id, "razorpay_payment_id": rzp_payment_id,
         "error": error_description, "error_code": entity.get("error_code")},
        ctx,
    )
    log.info("webhook_payment_failed", order_id=order_id, error=error_description)


async def mark_payment_refunded(
    db: AsyncSession,
    payment: Payment,
    refund: dict | None = None,
) -> Optional[int]:
    """``completed -> refunded`` plus a floored compensating debit, atomically.

    Returns the credits actually removed, or None when the payment was not
    ``completed`` (duplicate or stale refund event).
    """
    refund = refund or {}
    payment_id, user_id = payment.payment_id, payment.user_id
    credits = payment.credits_purchased
    meta = {
        **(payment.meta or {}),
        "refund_id": refund.get("id"),
        "refund_amount": refund.get("amount"),
        "refund_status": refund.get("status"),
    }
    try:
        result = await db.execute(
            update(Payment)
            .where(
                Payment.payment_id == payment_id,
                Payment.status == PaymentStatus.COMPLETED,
            )
            .values(status=PaymentStatus.REFUNDED, meta=meta)
            .returning(Payment.payment_id)
        )
        if result.scalar_one_or_none() is None:
            await db.commit()
            return None

        removed, _ = await deduct_credits_floored(
            db,
            user_id,
            credits,
            description=f"Refund of {credits} purchased credits",
            payment_id=payment_id,
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    return removed


async def _handle_refund_created(db, audit: AuditLogger, entity: dict, ctx: RequestContext) -> None:
    rzp_payment_id = entity.get("payment_id")
    if not rzp_payment_id:
        return
    result = await db.execute(select(Payment).where(Payment.razorpay_payment_id == rzp_payment_id))
    payment = result.scalar_one_or_none()
    if payment is None:
        log.error("webhook_refund_payment_not_found", razorpay_payment_id=rzp_payment_id)
        return

    payment_id, user_id = payment.payment_id, payment.user_id
    credits = payment.credits_purchased
    removed = await mark_payment_refunded(db, payment, entity)
    if removed is None:
        log.info("webhook_refund_ignored", razorpay_payment_id=rzp_payment_id)
        return

    await audit.log_payment_event(
        user_id, AuditAction.PAYMENT_REFUNDED, payment_id, LogStatus.SUCCESS,
        {"refund_id": entity.get("id"), "refund_amount": entity.get("amount"),
         "credits_deducted": removed, "credits_purchased": credits},
        ctx,
    )
    await audit.log_credit_event(
        user_id, AuditAction.CREDITS_REFUNDED, payment_id, LogStatus.SUCCESS,
        {"credits_deducted": removed}, ctx,
    )
    log.info("webhook_refund_processed", razorpay_payment_id=rzp_payment_id, removed=removed)


async def handle_webhook(
    db: AsyncSession,
    audit: AuditLogger,
    raw_body: bytes,
    signature: str | None,
    ctx: RequestContext,
) -> dict:
    """Verify a Razorpay webhook over the raw body, then dispatch the event.

    Signature problems raise; every other failure is logged and audit-logged
    and still acknowledged so the gateway does not retry.
    """
    if not signature:
        await audit.log_security_event(
            None, AuditAction.SECURITY_INVALID_SIGNATURE, LogStatus.FAILURE,
            {"reason": "Missing webhook signature", "ip": ctx.ip_address}, ctx,
        )
        raise WebhookSignatureError("Missing signature")

    if not settings.RAZORPAY_WEBHOOK_SECRET:
        log.error("webhook_secret_missing", stage=settings.PAYMENT_STAGE)
        if settings.PAYMENT_STAGE != "sandbox":
            raise AppError("Webhook not configured")
    elif not verify_webhook_signature(raw_body, signature):
        await audit.log_security_event(
            None, AuditAction.SECURITY_INVALID_SIGNATURE, LogStatus.FAILURE,
            {"reason": "Invalid webhook signature", "ip": ctx.ip_address}, ctx,
        )
        raise WebhookSignatureError("Invalid signature")

    event = None
    try:
        payload = json.loads(raw_body)
        event = payload.get("event")
        entities = payload.get("payload") or {}
        log.info("webhook_received", webhook_event=event)

        if event == "payment.captured":
            entity = (entities.get("payment") or {}).get("entity")
            if entity:
                await _handle_payment_captured(db, audit, entity, ctx)
        elif event == "payment.failed":
            entity = (entities.get("payment") or {}).get("entity")
            if entity:
                await _handle_payment_failed(db, audit, entity, ctx)
        elif event == "payment.authorized":
            entity = (entities.get("payment") or {}).get("entity") or {}
            log.info("webhook_payment_authorized", razorpay_payment_id=entity.get("id"))
        elif event == "refund.created":
            entity = (entities.get("refund") or {}).get("entity")
            if entity:
                await _handle_refund_created(db, audit, entity, ctx)
        else:
            log.info("webhook_event_unhandled", webhook_event=event)
    except Exception as exc:
        log.exception("webhook_processing_failed", webhook_event=event)
        await db.rollback()
        await audit.log_payment_event(
            None, AuditAction.PAYMENT_FAILED, None, LogStatus.ERROR,
            {"error": "Webhook processing failed", "event": event, "detail": str(exc)}, ctx,
        )
        return {"received": True, "error": "Internal error logged"}

    return {"received": True}


# ---------------------------------------------------------------------------
# History and maintenance
# ---------------------------------------------------------------------------

async def get_payment_history(
    db: AsyncSession,
    user_id: uuid.UUID,
    limit: int = 20,
    offset: int = 0,
) -> PaymentHistoryResponse:
    if limit < 1 or limit > 100:
        raise ValidationError("limit must be between 1 and 100")
    if offset < 0:
        raise ValidationError("offset must be non-negative")

    total = (
        await db.execute(select(func.count()).select_from(Payment).where(Payment.user_id == user_id))
    ).scalar_one()
    result = await db.execute(
        select(Payment)
        .where(Payment.user_id == user_id)
        .order_by(Payment.created_at.desc())
        .limit(limit)
        .offset(offset)
    )
    payments = [
        PaymentResponse(
            id=p.payment_id,
            razorpay_order_id=p.razorpay_order_id,
            razorpay_payment_id=p.razorpay_payment_id,
            amount_usd=float(p.amount_usd),
            amount_inr=float(p.amount_inr),
            credits_purchased=p.credits_purchased,
            status=p.status,
            payment_method=p.payment_method,
            payment_stage=p.payment_stage,
            error_message=p.error_message,
            created_at=p.created_at,
            completed_at=p.completed_at,
        )
        for p in result.scalars().all()
    ]
    return PaymentHistoryResponse(payments=payments, total=total, limit=limit, offset=offset)


async def expire_stale_orders(
    db: AsyncSession,
    older_than: timedelta | None = None,
    audit: AuditLogger | None = None,
) -> list[uuid.UUID]:
    """Move ``created`` payments older than *older_than* to ``failed``.

    Returns the ids of the expired payments.
    """
    older_than = older_than or timedelta(hours=settings.ORDER_EXPIRY_HOURS)
    cutoff = datetime.now(timezone.utc) - older_than

    result = await db.execute(
        update(Payment)
        .where(Payment.status == PaymentStatus.CREATED, Payment.created_at < cutoff)
        .values(status=PaymentStatus.FAILED, error_message="Order expired before payment")
        .returning(Payment.payment_id, Payment.user_id)
    )
    expired = result.all()
    await db.commit()

    if audit is not None:
        for payment_id, user_id in expired:
            await audit.log_payment_event(
                user_id, AuditAction.PAYMENT_EXPIRED, payment_id, LogStatus.FAILURE,
                {"reason": "order expired", "older_than_hours": older_than.total_seconds() / 3600},
            )
    log.info("stale_orders_expired", count=len(expired), cutoff=cutoff.isoformat())
    return [payment_id for payment_id, _ in expired]
