"""Request sanitisation and schema validation for every mutating endpoint.

Raw JSON is sanitised first (dangerous markup and inline event handlers are
stripped from every string, prototype-pollution keys are dropped) and then
validated against a pydantic model.  ``validate_and_sanitize`` is total: any
malformed input produces a failed ``ValidationResult`` instead of raising.
"""

from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Generic, Optional, TypeVar
from urllib.parse import urlparse

from fastapi import Request
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from photostudio.config import settings
from photostudio.errors import ValidationError

SchemaT = TypeVar("SchemaT", bound=BaseModel)

# ---------------------------------------------------------------------------
# Sanitisation
# ---------------------------------------------------------------------------

_DANGEROUS_PATTERNS = [
    re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.IGNORECASE),
    re.compile(r"<iframe\b[^<]*(?:(?!</iframe>)<[^<]*)*</iframe>", re.IGNORECASE),
    re.compile(r"<object\b[^<]*(?:(?!</object>)<[^<]*)*</object>", re.IGNORECASE),
    re.compile(r"<embed\b[^<]*>", re.IGNORECASE),
    re.compile(r"""on\w+\s*=\s*["'][^"']*["']""", re.IGNORECASE),
    re.compile(r"on\w+\s*=\s*[^\s>]*", re.IGNORECASE),
]

_FORBIDDEN_KEYS = frozenset({"__proto__", "constructor", "prototype"})


def sanitize_string(value: str) -> str:
    """Strip script/iframe/object/embed tags and inline event handlers."""
    for pattern in _DANGEROUS_PATTERNS:
        value = pattern.sub("", value)
    return value.strip()


def sanitize_value(value: Any) -> Any:
    """Recursively sanitise strings inside dicts and lists."""
    if isinstance(value, str):
        return sanitize_string(value)
    if isinstance(value, dict):
        return {
            key: sanitize_value(item)
            for key, item in value.items()
            if key not in _FORBIDDEN_KEYS
        }
    if isinstance(value, list):
        return [sanitize_value(item) for item in value]
    return value


# ---------------------------------------------------------------------------
# Field helpers
# ---------------------------------------------------------------------------

_FOLDER_NAME_INVALID = re.compile(r'[<>:"/\\|?*]')


def _check_url(value: str, label: str) -> str:
    parsed = urlparse(value)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError(f"Invalid {label} URL")
    return value


def _check_folder_name(value: str) -> str:
    if not value:
        raise ValueError("Folder name is required")
    if len(value) > 100:
        raise ValueError("Folder name must be less than 100 characters")
    if not value.strip():
        raise ValueError("Folder name cannot be empty")
    if _FOLDER_NAME_INVALID.search(value):
        raise ValueError("Folder name contains invalid characters")
    return value


def _check_description(value: Optional[str]) -> Optional[str]:
    if value is not None and len(value) > 500:
        raise ValueError("Description must be less than 500 characters")
    return value


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------

class CreatePaymentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    amount_usd: float = Field(..., alias="amountUsd", strict=True)

    @field_validator("amount_usd")
    @classmethod
    def validate_amount(cls, v: float) -> float:
        if math.isnan(v):
            raise ValueError("Amount must be a valid number")
        if not math.isfinite(v):
            raise ValueError("Amount must be finite")
        if v <= 0:
            raise ValueError("Amount must be positive")
        if v < settings.MIN_PURCHASE_USD:
            raise ValueError(f"Minimum purchase is ${settings.MIN_PURCHASE_USD:g}")
        if v > settings.MAX_PURCHASE_USD:
            raise ValueError(f"Maximum purchase is ${settings.MAX_PURCHASE_USD:g}")
        if Decimal(str(v)).as_tuple().exponent < -4:
            raise ValueError("Amount can have at most 4 decimal places")
        return float(v)


class VerifyPaymentRequest(BaseModel):
    razorpay_order_id: str = Field(..., strict=True)
    razorpay_payment_id: str = Field(..., strict=True)
    razorpay_signature: str = Field(..., strict=True)

    @field_validator("razorpay_order_id")
    @classmethod
    def order_id_required(cls, v: str) -> str:
        if not v:
            raise ValueError("Order ID is required")
        return v

    @field_validator("razorpay_payment_id")
    @classmethod
    def payment_id_required(cls, v: str) -> str:
        if not v:
            raise ValueError("Payment ID is required")
        return v

    @field_validator("razorpay_signature")
    @classmethod
    def signature_required(cls, v: str) -> str:
        if not v:
            raise ValueError("Signature is required")
        return v


class GenerateImageRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    prompt: str = Field(..., strict=True)
    product_image_url: str = Field(..., alias="productImageUrl", strict=True)
    model_image_url: Optional[str] = Field(None, alias="modelImageUrl")
    num_variations: int = Field(1, alias="numVariations", strict=True)

    @field_validator("prompt")
    @classmethod
    def validate_prompt(cls, v: str) -> str:
        if len(v) < 3:
            raise ValueError("Prompt must be at least 3 characters")
        if len(v) > 2000:
            raise ValueError("Prompt must be less than 2000 characters")
        if not v.strip():
            raise ValueError("Prompt cannot be empty")
        return v

    @field_validator("product_image_url")
    @classmethod
    def validate_product_url(cls, v: str) -> str:
        return _check_url(v, "product image")

    @field_validator("model_image_url")
    @classmethod
    def validate_model_url(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        return _check_url(v, "model image")

    @field_validator("num_variations")
    @classmethod
    def validate_variations(cls, v: int) -> int:
        if v < 1:
            raise ValueError("Minimum 1 variation")
        if v > 10:
            raise ValueError("Maximum 10 variations")
        return v


class CreateFolderRequest(BaseModel):
    name: str = Field(..., strict=True)
    description: Optional[str] = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        return _check_folder_name(v)

    @field_validator("description")
    @classmethod
    def validate_description(cls, v: Optional[str]) -> Optional[str]:
        return _check_description(v)


class UpdateFolderRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    folder_id: str = Field(..., alias="folderId", strict=True)
    name: Optional[str] = None
    description: Optional[str] = None

    @field_validator("description")
    @classmethod
    def validate_description(cls, v: Optional[str]) -> Optional[str]:
        return _check_description(v)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        return _check_folder_name(v)


class AddCreditsRequest(BaseModel):
    amount: int = Field(..., strict=True)
    description: str = Field("", max_length=500)

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, v: int) -> int:
        if v < 1:
            raise ValueError("Amount must be positive")
        if v > 100_000:
            raise ValueError("Amount too large")
        return v


# ---------------------------------------------------------------------------
# Validation entry point
# ---------------------------------------------------------------------------

@dataclass
class ValidationResult(Generic[SchemaT]):
    success: bool
    data: Optional[SchemaT] = None
    error: Optional[str] = None
    errors: list[dict] = field(default_factory=list)


def _first_message(exc: PydanticValidationError) -> str:
    first = exc.errors()[0]
    ctx_error = first.get("ctx", {}).get("error")
    if first["type"] == "value_error" and ctx_error is not None:
        return str(ctx_error)
    location = ".".join(str(part) for part in first.get("loc", ()))
    if first["type"] == "missing":
        return f"{location} is required"
    return f"{location}: {first['msg']}" if location else first["msg"]


def validate_and_sanitize(schema: type[SchemaT], raw: Any) -> ValidationResult[SchemaT]:
    """Sanitise *raw* and validate it against *schema* without raising."""
    try:
        if not isinstance(raw, dict):
            return ValidationResult(success=False, error="Request body must be a JSON object")
        sanitized = sanitize_value(raw)
        return ValidationResult(success=True, data=schema.model_validate(sanitized))
    except PydanticValidationError as exc:
        return ValidationResult(
            success=False,
            error=_first_message(exc),
            errors=exc.errors(include_url=False, include_context=False),
        )
    except Exception:
        return ValidationResult(success=False, error="Validation failed")


def require_valid(schema: type[SchemaT], raw: Any) -> SchemaT:
    """Validate or raise ``ValidationError`` with the first failure message."""
    result = validate_and_sanitize(schema, raw)
    if not result.success:
        raise ValidationError(result.error)
    return result.data  # type: ignore[return-value]


async def read_json_body(request: Request) -> Any:
    try:
        return await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise ValidationError("Invalid JSON body")


# ---------------------------------------------------------------------------
# Request metadata
# ---------------------------------------------------------------------------

def get_ip_address(headers) -> str:
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    for header in ("x-real-ip", "cf-connecting-ip"):
        value = headers.get(header)
        if value:
            return value
    return "unknown"


def get_user_agent(headers) -> str:
    return headers.get("user-agent") or "unknown"
