"""Tests for request sanitisation and schema validation."""

import pytest

from photostudio.errors import ValidationError
from photostudio.services.validation import (
    CreateFolderRequest,
    CreatePaymentRequest,
    GenerateImageRequest,
    UpdateFolderRequest,
    VerifyPaymentRequest,
    get_ip_address,
    get_user_agent,
    require_valid,
    sanitize_string,
    sanitize_value,
    validate_and_sanitize,
)


def test_sanitize_strips_script_and_handlers():
    assert sanitize_string("<script>alert(1)</script>Summer shoot") == "Summer shoot"
    assert sanitize_string('<img src=x onerror="steal()">') == "<img src=x >"
    assert sanitize_string("  plain  ") == "plain"


def test_sanitize_drops_prototype_keys_recursively():
    raw = {"name": "a", "__proto__": {"admin": True}, "nested": [{"constructor": 1, "ok": "<iframe>x</iframe>y"}]}

    assert sanitize_value(raw) == {"name": "a", "nested": [{"ok": "y"}]}


def test_validate_never_raises_on_garbage():
    for raw in (None, [], "string", 42, {"amountUsd": object()}):
        result = validate_and_sanitize(CreatePaymentRequest, raw)
        assert result.success is False
        assert result.error


def test_payment_amount_must_be_number():
    result = validate_and_sanitize(CreatePaymentRequest, {"amountUsd": "10"})
    assert result.success is False


def test_payment_amount_accepts_bounds():
    assert require_valid(CreatePaymentRequest, {"amountUsd": 1}).amount_usd == 1.0
    assert require_valid(CreatePaymentRequest, {"amountUsd": 9999}).amount_usd == 9999.0


def test_payment_amount_precision():
    assert require_valid(CreatePaymentRequest, {"amountUsd": 9.999}).amount_usd == 9.999

    result = validate_and_sanitize(CreatePaymentRequest, {"amountUsd": 9.99999})
    assert result.success is False
    assert result.error == "Amount can have at most 4 decimal places"


def test_verify_request_requires_all_fields():
    with pytest.raises(ValidationError) as exc_info:
        require_valid(VerifyPaymentRequest, {"razorpay_order_id": "o", "razorpay_payment_id": "p"})
    assert exc_info.value.message == "razorpay_signature is required"

    with pytest.raises(ValidationError) as exc_info:
        require_valid(VerifyPaymentRequest, {
            "razorpay_order_id": "", "razorpay_payment_id": "p", "razorpay_signature": "s",
        })
    assert exc_info.value.message == "Order ID is required"


def test_generate_request_rules():
    ok = require_valid(GenerateImageRequest, {
        "prompt": "Studio shot on marble",
        "productImageUrl": "https://cdn.example.com/p.png",
        "numVariations": 2,
    })
    assert ok.num_variations == 2
    assert ok.model_image_url is None

    for body, message in [
        ({"prompt": "ab", "productImageUrl": "https://x.io/p.png"}, "Prompt must be at least 3 characters"),
        ({"prompt": "abc", "productImageUrl": "ftp://x.io/p.png"}, "Invalid product image URL"),
        ({"prompt": "abc", "productImageUrl": "https://x.io/p.png", "numVariations": 11},
         "Maximum 10 variations"),
        ({"prompt": "abc", "productImageUrl": "https://x.io/p.png", "modelImageUrl": "nope"},
         "Invalid model image URL"),
    ]:
        with pytest.raises(ValidationError) as exc_info:
            require_valid(GenerateImageRequest, body)
        assert exc_info.value.message == message


def test_folder_name_rules():
    assert require_valid(CreateFolderRequest, {"name": "Spring 2026"}).name == "Spring 2026"

    for name, message in [
        ("", "Folder name is required"),
        ("a/b", "Folder name contains invalid characters"),
        ("x" * 101, "Folder name must be less than 100 characters"),
    ]:
        with pytest.raises(ValidationError) as exc_info:
            require_valid(CreateFolderRequest, {"name": name})
        assert exc_info.value.message == message


def test_update_folder_requires_id():
    with pytest.raises(ValidationError) as exc_info:
        require_valid(UpdateFolderRequest, {"name": "New"})
    assert exc_info.value.message == "folderId is required"


def test_request_metadata_headers():
    assert get_ip_address({"x-forwarded-for": "203.0.113.9, 10.0.0.1"}) == "203.0.113.9"
    assert get_ip_address({"x-real-ip": "198.51.100.2"}) == "198.51.100.2"
    assert get_ip_address({}) == "unknown"
    assert get_user_agent({"user-agent": "pytest"}) == "pytest"
    assert get_user_agent({}) == "unknown"
