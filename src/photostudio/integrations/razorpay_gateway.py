"""Razorpay integration -- order creation, signature checks, payment lookup.

The SDK is synchronous, so every remote call runs in a worker thread under
a fixed timeout.  Signature helpers are pure functions over the shared
secret and never raise on malformed input.

Usage:
    from photostudio.integrations.razorpay_gateway import RazorpayGateway

    gateway = RazorpayGateway()
    order = await gateway.create_order(10.0, user_id="...", user_email="a@b.c")
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import math
import time
from dataclasses import dataclass
from decimal import ROUND_FLOOR, ROUND_HALF_UP, Decimal, InvalidOperation

import razorpay
import structlog

from photostudio.config import settings
from photostudio.errors import GatewayError, ValidationError

log = structlog.get_logger()


# ---------------------------------------------------------------------------
# Pricing
# ---------------------------------------------------------------------------

def _to_decimal(amount_usd) -> Decimal:
    # str() first so 9.999 stays 9.999 rather than its binary expansion.
    try:
        value = Decimal(str(amount_usd))
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError("Amount must be a valid number")
    if not value.is_finite():
        raise ValidationError("Amount must be finite")
    return value


def calculate_credits(amount_usd) -> int:
    """floor(amount_usd * CREDITS_PER_DOLLAR); raises outside purchase bounds."""
    if isinstance(amount_usd, bool):
        raise ValidationError("Amount must be a valid number")
    if isinstance(amount_usd, float) and not math.isfinite(amount_usd):
        raise ValidationError("Amount must be finite")
    value = _to_decimal(amount_usd)
    minimum = Decimal(str(settings.MIN_PURCHASE_USD))
    maximum = Decimal(str(settings.MAX_PURCHASE_USD))
    if value < minimum or value > maximum:
        raise ValidationError(
            f"Amount must be between ${settings.MIN_PURCHASE_USD:g} "
            f"and ${settings.MAX_PURCHASE_USD:g}"
        )
    credits = (value * settings.CREDITS_PER_DOLLAR).to_integral_value(rounding=ROUND_FLOOR)
    return int(credits)


def convert_usd_to_inr_paise(amount_usd, exchange_rate=None) -> int:
    """Convert USD to the settlement currency's minor unit (paise), half-up."""
    rate = Decimal(str(exchange_rate if exchange_rate is not None else settings.USD_TO_INR_RATE))
    paise = _to_decimal(amount_usd) * rate * 100
    return int(paise.to_integral_value(rounding=ROUND_HALF_UP))


# ---------------------------------------------------------------------------
# Signatures
# ---------------------------------------------------------------------------

def _hmac_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_payment_signature(order_id, payment_id, signature, secret=None) -> bool:
    """Check the checkout callback signature over ``order_id|payment_id``."""
    secret = secret if secret is not None else settings.RAZORPAY_KEY_SECRET
    try:
        if not (order_id and payment_id and signature and secret):
            return False
        expected = _hmac_hex(secret, f"{order_id}|{payment_id}".encode("utf-8"))
        return hmac.compare_digest(expected.encode("ascii"), signature.encode("utf-8"))
    except (TypeError, AttributeError, UnicodeError):
        return False


def verify_webhook_signature(raw_body: bytes, signature, secret=None) -> bool:
    """Check a webhook signature over the raw, unparsed request body."""
    secret = secret if secret is not None else settings.RAZORPAY_WEBHOOK_SECRET
    try:
        if not secret:
            log.error("webhook_secret_missing")
            return False
        if not signature or not isinstance(raw_body, (bytes, bytearray)):
            return False
        expected = _hmac_hex(secret, bytes(raw_body))
        return hmac.compare_digest(expected.encode("ascii"), signature.encode("utf-8"))
    except (TypeError, AttributeError, UnicodeError):
        return False


# ---------------------------------------------------------------------------
# Gateway client
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class OrderResult:
    order_id: str
    amount_usd: float
    amount_inr: float
    amount_paise: int
    currency: str
    credits: int
    payment_stage: str


class RazorpayGateway:
    """Thin async wrapper around the Razorpay SDK client."""

    def __init__(self, key_id: str | None = None, key_secret: str | None = None,
                 timeout: float | None = None, client=None) -> None:
        self.key_id = key_id if key_id is not None else settings.RAZORPAY_KEY_ID
        self.key_secret = key_secret if key_secret is not None else settings.RAZORPAY_KEY_SECRET
        self.timeout = timeout if timeout is not None else settings.GATEWAY_TIMEOUT_SECONDS
        self._client = client

    @property
    def configured(self) -> bool:
        return bool(self.key_id and self.key_secret)

    def _get_client(self):
        if not self.configured:
            raise GatewayError("Payment gateway is not configured")
        if self._client is None:
            self._client = razorpay.Client(auth=(self.key_id, self.key_secret))
        return self._client

    async def _call(self, operation: str, fn, *args, **kwargs):
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(fn, *args, **kwargs), timeout=self.timeout
            )
        except asyncio.TimeoutError:
            log.error("gateway_timeout", operation=operation, timeout=self.timeout)
            raise GatewayError()
        except GatewayError:
            raise
        except Exception as exc:
            log.error("gateway_call_failed", operation=operation, error=str(exc))
            raise GatewayError()

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    async def create_order(self, amount_usd: float, user_id: str, user_email: str) -> OrderResult:
        """Create a remote order for *amount_usd*, priced in INR paise."""
        credits = calculate_credits(amount_usd)
        amount_paise = convert_usd_to_inr_paise(amount_usd)
        client = self._get_client()

        stage = settings.PAYMENT_STAGE
        options = {
            "amount": amount_paise,
            "currency": settings.SETTLEMENT_CURRENCY,
            # Receipts are capped at 40 characters by the gateway.
            "receipt": f"order_{str(user_id)[:8]}_{int(time.time() * 1000)}",
            "notes": {
                "user_id": str(user_id),
                "user_email": user_email,
                "amount_usd": f"{float(amount_usd):.2f}",
                "credits": str(credits),
                "payment_stage": stage,
            },
        }
        order = await self._call("order.create", client.order.create, data=options)

        order_id = order.get("id") if isinstance(order, dict) else None
        if not order_id:
            log.error("gateway_order_missing_id", response=order)
            raise GatewayError()

        log.info("gateway_order_created", order_id=order_id, credits=credits, stage=stage)
        return OrderResult(
            order_id=order_id,
            amount_usd=float(amount_usd),
            amount_inr=amount_paise / 100,
            amount_paise=amount_paise,
            currency=settings.SETTLEMENT_CURRENCY,
            credits=credits,
            payment_stage=stage,
        )

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    async def fetch_payment_details(self, payment_id: str) -> dict:
        """Look up a captured payment. Callers treat failure as non-fatal."""
        client = self._get_client()
        return await self._call("payment.fetch", client.payment.fetch, payment_id)
