"""Tests for the Razorpay payment flow: orders, verification, webhooks, refunds."""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import func, select

from photostudio.errors import GatewayError
from photostudio.integrations.razorpay_gateway import OrderResult
from photostudio.models import AuditLog, CreditTransaction, Payment, PaymentStatus, TxnType, User
from photostudio.services.audit_logger import AuditAction
from photostudio.services.credit_service import compute_ledger_balance, deduct_credits
from photostudio.services.payment_service import complete_payment, expire_stale_orders

from conftest import TEST_KEY_SECRET, TEST_WEBHOOK_SECRET


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _checkout_signature(order_id: str, payment_id: str) -> str:
    message = f"{order_id}|{payment_id}".encode()
    return hmac.new(TEST_KEY_SECRET.encode(), message, hashlib.sha256).hexdigest()


def _signed_webhook(payload: dict) -> tuple[bytes, dict]:
    raw = json.dumps(payload).encode()
    signature = hmac.new(TEST_WEBHOOK_SECRET.encode(), raw, hashlib.sha256).hexdigest()
    return raw, {"x-razorpay-signature": signature, "content-type": "application/json"}


def _captured_event(order_id: str, payment_id: str) -> dict:
    return {
        "event": "payment.captured",
        "payload": {"payment": {"entity": {
            "id": payment_id, "order_id": order_id, "method": "upi", "status": "captured",
        }}},
    }


def _verify_body(order_id: str, payment_id: str) -> dict:
    return {
        "razorpay_order_id": order_id,
        "razorpay_payment_id": payment_id,
        "razorpay_signature": _checkout_signature(order_id, payment_id),
    }


async def _make_payment(
    session_factory,
    user: User,
    order_id: str = "order_test_1",
    status: str = PaymentStatus.CREATED,
    credits: int = 1000,
    created_at: datetime | None = None,
    razorpay_payment_id: str | None = None,
) -> Payment:
    async with session_factory() as session:
        payment = Payment(
            user_id=user.user_id,
            razorpay_order_id=order_id,
            razorpay_payment_id=razorpay_payment_id,
            amount_usd=Decimal("10.00"),
            amount_inr=Decimal("830.00"),
            credits_purchased=credits,
            status=status,
            payment_stage="sandbox",
            meta={},
        )
        if created_at is not None:
            payment.created_at = created_at
        session.add(payment)
        await session.commit()
    return payment


async def _balance(session_factory, user_id: uuid.UUID) -> int:
    async with session_factory() as session:
        return (await session.execute(select(User.credits).where(User.user_id == user_id))).scalar_one()


async def _purchase_rows(session_factory, payment_id: uuid.UUID) -> int:
    async with session_factory() as session:
        return (await session.execute(
            select(func.count()).select_from(CreditTransaction).where(
                CreditTransaction.payment_id == payment_id,
                CreditTransaction.txn_type == TxnType.PURCHASE,
            )
        )).scalar_one()


async def _status(session_factory, payment_id: uuid.UUID) -> str:
    async with session_factory() as session:
        return (await session.execute(
            select(Payment.status).where(Payment.payment_id == payment_id)
        )).scalar_one()


async def _audit_actions(session_factory) -> list[str]:
    async with session_factory() as session:
        return list((await session.execute(select(AuditLog.action))).scalars().all())


# ---------------------------------------------------------------------------
# Order creation
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_create_order_persists_created_payment(client, gateway, user, session_factory):
    gateway.create_order.return_value = OrderResult(
        order_id="order_abc", amount_usd=10.0, amount_inr=830.0, amount_paise=83000,
        currency="INR", credits=1000, payment_stage="sandbox",
    )

    resp = await client.post("/api/payments/create-order", json={"amountUsd": 10})

    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["orderId"] == "order_abc"
    assert body["amount"] == 10.0
    assert body["amountPaise"] == 83000
    assert body["credits"] == 1000
    assert body["keyId"] == "rzp_test_key"
    assert body["prefill"] == {"name": "Shopper", "email": "shopper@example.com"}
    assert body["notes"] == {"userId": str(user.user_id), "credits": 1000}
    gateway.create_order.assert_awaited_once_with(10.0, str(user.user_id), "shopper@example.com")

    async with session_factory() as session:
        payment = (await session.execute(
            select(Payment).where(Payment.razorpay_order_id == "order_abc")
        )).scalar_one()
    assert payment.status == PaymentStatus.CREATED
    assert payment.credits_purchased == 1000
    assert payment.amount_usd == Decimal("10.00")
    assert resp.headers["X-RateLimit-Limit"] == "10"


@pytest.mark.asyncio
async def test_create_order_stores_priced_amount(client, gateway, session_factory):
    gateway.create_order.return_value = OrderResult(
        order_id="order_frac", amount_usd=9.999, amount_inr=829.92, amount_paise=82992,
        currency="INR", credits=999, payment_stage="sandbox",
    )

    resp = await client.post("/api/payments/create-order", json={"amountUsd": 9.999})

    assert resp.status_code == 200
    async with session_factory() as session:
        payment = (await session.execute(
            select(Payment).where(Payment.razorpay_order_id == "order_frac")
        )).scalar_one()
    assert payment.amount_usd == Decimal("9.999")
    assert payment.credits_purchased == 999

    history = (await client.get("/api/payments/history")).json()["payments"]
    assert history[0]["amount_usd"] == 9.999
    assert history[0]["credits_purchased"] == 999


@pytest.mark.asyncio
@pytest.mark.parametrize("amount, message", [
    (0.5, "Minimum purchase is $1"),
    (10000, "Maximum purchase is $9999"),
    (-5, "Amount must be positive"),
])
async def test_create_order_rejects_out_of_range_amounts(client, gateway, amount, message):
    resp = await client.post("/api/payments/create-order", json={"amountUsd": amount})

    assert resp.status_code == 400
    assert resp.json()["error"] == message
    gateway.create_order.assert_not_awaited()


@pytest.mark.asyncio
async def test_create_order_rejects_string_amount(client, gateway):
    resp = await client.post("/api/payments/create-order", json={"amountUsd": "10"})

    assert resp.status_code == 400
    gateway.create_order.assert_not_awaited()


@pytest.mark.asyncio
async def test_create_order_gateway_failure(client, gateway, session_factory):
    gateway.create_order.side_effect = GatewayError()

    resp = await client.post("/api/payments/create-order", json={"amountUsd": 25})

    assert resp.status_code == 500
    assert resp.json() == {"error": "Failed to create payment order. Please try again."}
    async with session_factory() as session:
        count = (await session.execute(select(func.count()).select_from(Payment))).scalar_one()
    assert count == 0
    assert AuditAction.PAYMENT_ORDER_CREATED in await _audit_actions(session_factory)


# ---------------------------------------------------------------------------
# Client-side verification
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_verify_credits_purchase(client, user, session_factory):
    payment = await _make_payment(session_factory, user)

    resp = await client.post("/api/payments/verify", json=_verify_body("order_test_1", "pay_1"))

    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["creditsAdded"] == 1000
    assert body["totalCredits"] == 1100
    assert body["paymentId"] == str(payment.payment_id)
    assert await _balance(session_factory, user.user_id) == 1100
    assert await _purchase_rows(session_factory, payment.payment_id) == 1
    assert await _status(session_factory, payment.payment_id) == PaymentStatus.COMPLETED

    actions = await _audit_actions(session_factory)
    assert AuditAction.PAYMENT_COMPLETED in actions
    assert AuditAction.CREDITS_PURCHASED in actions


@pytest.mark.asyncio
async def test_verify_twice_credits_once(client, user, session_factory):
    payment = await _make_payment(session_factory, user)
    body = _verify_body("order_test_1", "pay_1")

    first = await client.post("/api/payments/verify", json=body)
    second = await client.post("/api/payments/verify", json=body)

    assert first.status_code == 200
    assert second.status_code == 200
    assert second.json()["alreadyProcessed"] is True
    assert second.json()["totalCredits"] == 1100
    assert await _balance(session_factory, user.user_id) == 1100
    assert await _purchase_rows(session_factory, payment.payment_id) == 1


@pytest.mark.asyncio
async def test_verify_rejects_bad_signature(client, user, session_factory):
    payment = await _make_payment(session_factory, user)
    body = _verify_body("order_test_1", "pay_1")
    body["razorpay_signature"] = "0" * 64

    resp = await client.post("/api/payments/verify", json=body)

    assert resp.status_code == 400
    assert resp.json()["error"] == "Payment verification failed. Invalid signature."
    assert await _balance(session_factory, user.user_id) == 100
    assert await _status(session_factory, payment.payment_id) == PaymentStatus.CREATED
    assert AuditAction.SECURITY_INVALID_SIGNATURE in await _audit_actions(session_factory)


@pytest.mark.asyncio
async def test_verify_unknown_order(client):
    resp = await client.post("/api/payments/verify", json=_verify_body("order_missing", "pay_1"))

    assert resp.status_code == 404
    assert resp.json()["error"] == "Payment record not found"


@pytest.mark.asyncio
async def test_verify_failed_payment_conflicts(client, user, session_factory):
    await _make_payment(session_factory, user, status=PaymentStatus.FAILED)

    resp = await client.post("/api/payments/verify", json=_verify_body("order_test_1", "pay_1"))

    assert resp.status_code == 409
    assert await _balance(session_factory, user.user_id) == 100


@pytest.mark.asyncio
async def test_verify_missing_fields(client):
    resp = await client.post("/api/payments/verify", json={"razorpay_order_id": "order_1"})

    assert resp.status_code == 400
    assert "razorpay_payment_id" in resp.json()["error"]


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_webhook_capture_then_verify_credits_once(client, user, session_factory):
    payment = await _make_payment(session_factory, user)
    raw, headers = _signed_webhook(_captured_event("order_test_1", "pay_1"))

    hook = await client.post("/api/payments/webhook", content=raw, headers=headers)
    verify = await client.post("/api/payments/verify", json=_verify_body("order_test_1", "pay_1"))

    assert hook.status_code == 200
    assert hook.json() == {"received": True}
    assert verify.status_code == 200
    assert verify.json()["alreadyProcessed"] is True
    assert await _balance(session_factory, user.user_id) == 1100
    assert await _purchase_rows(session_factory, payment.payment_id) == 1


@pytest.mark.asyncio
async def test_webhook_replay_is_idempotent(client, user, session_factory):
    payment = await _make_payment(session_factory, user)
    raw, headers = _signed_webhook(_captured_event("order_test_1", "pay_1"))

    for _ in range(3):
        resp = await client.post("/api/payments/webhook", content=raw, headers=headers)
        assert resp.status_code == 200

    assert await _balance(session_factory, user.user_id) == 1100
    assert await _purchase_rows(session_factory, payment.payment_id) == 1


@pytest.mark.asyncio
async def test_webhook_rejects_invalid_signature(client, user, session_factory):
    await _make_payment(session_factory, user)
    raw, headers = _signed_webhook(_captured_event("order_test_1", "pay_1"))
    headers["x-razorpay-signature"] = "deadbeef"

    resp = await client.post("/api/payments/webhook", content=raw, headers=headers)

    assert resp.status_code == 401
    assert resp.json() == {"error": "Invalid signature"}
    assert await _balance(session_factory, user.user_id) == 100


@pytest.mark.asyncio
async def test_webhook_rejects_tampered_body(client, user, session_factory):
    await _make_payment(session_factory, user)
    raw, headers = _signed_webhook(_captured_event("order_test_1", "pay_1"))
    tampered = raw.replace(b"pay_1", b"pay_2")

    resp = await client.post("/api/payments/webhook", content=tampered, headers=headers)

    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_webhook_missing_signature(client):
    resp = await client.post("/api/payments/webhook", content=b"{}")

    assert resp.status_code == 401
    assert resp.json() == {"error": "Missing signature"}


@pytest.mark.asyncio
async def test_webhook_processing_error_is_acknowledged(client, session_factory):
    raw = b"not json at all"
    signature = hmac.new(TEST_WEBHOOK_SECRET.encode(), raw, hashlib.sha256).hexdigest()

    resp = await client.post(
        "/api/payments/webhook", content=raw, headers={"x-razorpay-signature": signature},
    )

    assert resp.status_code == 200
    assert resp.json() == {"received": True, "error": "Internal error logged"}
    assert AuditAction.PAYMENT_FAILED in await _audit_actions(session_factory)


@pytest.mark.asyncio
async def test_webhook_unknown_event_is_acknowledged(client):
    raw, headers = _signed_webhook({"event": "order.paid", "payload": {}})

    resp = await client.post("/api/payments/webhook", content=raw, headers=headers)

    assert resp.status_code == 200
    assert resp.json() == {"received": True}


@pytest.mark.asyncio
async def test_webhook_failed_marks_created_payment(client, user, session_factory):
    payment = await _make_payment(session_factory, user)
    raw, headers = _signed_webhook({
        "event": "payment.failed",
        "payload": {"payment": {"entity": {
            "id": "pay_1", "order_id": "order_test_1",
            "error_code": "BAD_REQUEST_ERROR", "error_description": "Card declined",
        }}},
    })

    resp = await client.post("/api/payments/webhook", content=raw, headers=headers)

    assert resp.status_code == 200
    async with session_factory() as session:
        stored = await session.get(Payment, payment.payment_id)
    assert stored.status == PaymentStatus.FAILED
    assert stored.error_message == "Card declined"
    assert stored.meta["error_code"] == "BAD_REQUEST_ERROR"


@pytest.mark.asyncio
async def test_webhook_failed_never_overrides_completed(client, user, session_factory):
    payment = await _make_payment(session_factory, user)
    await client.post("/api/payments/verify", json=_verify_body("order_test_1", "pay_1"))
    raw, headers = _signed_webhook({
        "event": "payment.failed",
        "payload": {"payment": {"entity": {"id": "pay_1", "order_id": "order_test_1"}}},
    })

    resp = await client.post("/api/payments/webhook", content=raw, headers=headers)

    assert resp.status_code == 200
    assert await _status(session_factory, payment.payment_id) == PaymentStatus.COMPLETED
    assert await _balance(session_factory, user.user_id) == 1100


@pytest.mark.asyncio
async def test_refund_removes_at_most_remaining_balance(client, user, session_factory):
    payment = await _make_payment(session_factory, user)
    await client.post("/api/payments/verify", json=_verify_body("order_test_1", "pay_1"))

    # Spend most of the purchase before the refund lands.
    async with session_factory() as session:
        await deduct_credits(session, user.user_id, 1050, description="Image generation")
        await session.commit()

    raw, headers = _signed_webhook({
        "event": "refund.created",
        "payload": {"refund": {"entity": {
            "id": "rfnd_1", "payment_id": "pay_1", "amount": 83000, "status": "processed",
        }}},
    })
    resp = await client.post("/api/payments/webhook", content=raw, headers=headers)
    again = await client.post("/api/payments/webhook", content=raw, headers=headers)

    assert resp.status_code == 200
    assert again.status_code == 200
    assert await _status(session_factory, payment.payment_id) == PaymentStatus.REFUNDED
    assert await _balance(session_factory, user.user_id) == 0

    async with session_factory() as session:
        refunds = (await session.execute(
            select(CreditTransaction.amount).where(
                CreditTransaction.payment_id == payment.payment_id,
                CreditTransaction.txn_type == TxnType.REFUND,
            )
        )).scalars().all()
        assert refunds == [-50]
        assert await compute_ledger_balance(session, user.user_id) == 0


# ---------------------------------------------------------------------------
# Concurrent completion
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_concurrent_completion_credits_once(user, session_factory):
    payment = await _make_payment(session_factory, user)

    async def _complete(source: str):
        async with session_factory() as session:
            loaded = await session.get(Payment, payment.payment_id)
            return await complete_payment(
                session, loaded, "pay_1", extra_metadata={"verified_via": source},
            )

    results = await asyncio.gather(
        _complete("client"), _complete("webhook"), return_exceptions=True,
    )

    applied = [r for r in results if not isinstance(r, Exception) and r.applied]
    assert len(applied) == 1
    assert await _balance(session_factory, user.user_id) == 1100
    assert await _purchase_rows(session_factory, payment.payment_id) == 1


@pytest.mark.asyncio
async def test_verify_and_webhook_race_credits_once(client, user, session_factory):
    payment = await _make_payment(session_factory, user)
    raw, headers = _signed_webhook(_captured_event("order_test_1", "pay_1"))

    verify, webhook = await asyncio.gather(
        client.post("/api/payments/verify", json=_verify_body("order_test_1", "pay_1")),
        client.post("/api/payments/webhook", content=raw, headers=headers),
    )

    assert verify.status_code == 200
    assert verify.json()["success"] is True
    assert webhook.status_code == 200
    assert await _status(session_factory, payment.payment_id) == PaymentStatus.COMPLETED
    assert await _purchase_rows(session_factory, payment.payment_id) == 1
    assert await _balance(session_factory, user.user_id) == 1100


@pytest.mark.asyncio
async def test_verify_reports_completion_by_webhook(client, gateway, user, session_factory):
    payment = await _make_payment(session_factory, user)

    async def _webhook_completes_first(rzp_payment_id):
        async with session_factory() as session:
            loaded = await session.get(Payment, payment.payment_id)
            await complete_payment(
                session, loaded, rzp_payment_id, extra_metadata={"webhook_processed": True},
            )
        return {"id": rzp_payment_id, "method": "card"}

    gateway.fetch_payment_details.side_effect = _webhook_completes_first

    resp = await client.post("/api/payments/verify", json=_verify_body("order_test_1", "pay_1"))

    assert resp.status_code == 200
    body = resp.json()
    assert body["alreadyProcessed"] is True
    assert body["totalCredits"] == 1100
    assert await _purchase_rows(session_factory, payment.payment_id) == 1
    assert await _balance(session_factory, user.user_id) == 1100


@pytest.mark.asyncio
async def test_webhook_reports_completion_by_verify(client, user, session_factory):
    payment = await _make_payment(session_factory, user)

    real_complete = complete_payment

    async def _verify_completes_first(db, loaded, rzp_payment_id, **kwargs):
        async with session_factory() as session:
            fresh = await session.get(Payment, payment.payment_id)
            await real_complete(session, fresh, rzp_payment_id, extra_metadata={"verified_via": "client"})
        return await real_complete(db, loaded, rzp_payment_id, **kwargs)

    raw, headers = _signed_webhook(_captured_event("order_test_1", "pay_1"))
    with patch(
        "photostudio.services.payment_service.complete_payment",
        AsyncMock(side_effect=_verify_completes_first),
    ) as completion:
        resp = await client.post("/api/payments/webhook", content=raw, headers=headers)

    assert resp.status_code == 200
    assert resp.json() == {"received": True}
    completion.assert_awaited_once()
    assert await _purchase_rows(session_factory, payment.payment_id) == 1
    assert await _balance(session_factory, user.user_id) == 1100
    async with session_factory() as session:
        completed_audits = (await session.execute(
            select(func.count()).select_from(AuditLog).where(
                AuditLog.action == AuditAction.PAYMENT_COMPLETED,
            )
        )).scalar_one()
    assert completed_audits == 0


@pytest.mark.asyncio
async def test_complete_payment_skips_non_created(user, session_factory):
    payment = await _make_payment(session_factory, user, status=PaymentStatus.FAILED)

    async with session_factory() as session:
        loaded = await session.get(Payment, payment.payment_id)
        result = await complete_payment(session, loaded, "pay_1")

    assert result.applied is False
    assert await _balance(session_factory, user.user_id) == 100


# ---------------------------------------------------------------------------
# History and expiry
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_payment_history_paginates(client, user, session_factory):
    now = datetime.now(timezone.utc)
    for i in range(3):
        await _make_payment(
            session_factory, user, order_id=f"order_{i}", created_at=now - timedelta(minutes=i),
        )

    resp = await client.get("/api/payments/history", params={"limit": 2})

    assert resp.status_code == 200
    body = resp.json()
    assert body["total"] == 3
    assert [p["razorpay_order_id"] for p in body["payments"]] == ["order_0", "order_1"]

    page_two = await client.get("/api/payments/history", params={"limit": 2, "offset": 2})
    assert [p["razorpay_order_id"] for p in page_two.json()["payments"]] == ["order_2"]


@pytest.mark.asyncio
async def test_payment_history_rejects_bad_limit(client):
    resp = await client.get("/api/payments/history", params={"limit": 0})

    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_expire_stale_orders(user, session_factory, audit):
    old = datetime.now(timezone.utc) - timedelta(hours=30)
    stale = await _make_payment(session_factory, user, order_id="order_stale", created_at=old)
    fresh = await _make_payment(session_factory, user, order_id="order_fresh")
    done = await _make_payment(
        session_factory, user, order_id="order_done", status=PaymentStatus.COMPLETED,
        created_at=old, razorpay_payment_id="pay_done",
    )

    async with session_factory() as session:
        expired = await expire_stale_orders(session, timedelta(hours=24), audit)

    assert expired == [stale.payment_id]
    assert await _status(session_factory, stale.payment_id) == PaymentStatus.FAILED
    assert await _status(session_factory, fresh.payment_id) == PaymentStatus.CREATED
    assert await _status(session_factory, done.payment_id) == PaymentStatus.COMPLETED
    assert AuditAction.PAYMENT_EXPIRED in await _audit_actions(session_factory)
