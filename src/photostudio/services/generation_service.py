"""Image generation orchestration -- credit check, model calls, storage, debit.

Credits are checked up front for the whole request but only debited per
image that was actually generated and stored, each in its own transaction,
so a failed variation never costs anything.
"""

from __future__ import annotations

import uuid
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from photostudio.config import settings
from photostudio.errors import AppError, InsufficientCreditsError, ValidationError
from photostudio.integrations.gemini_client import (
    GeminiImageClient,
    ImageGenerationError,
    fetch_source_image,
)
from photostudio.models import Image, User
from photostudio.services import media_storage
from photostudio.services.audit_logger import (
    AuditAction,
    AuditLogger,
    LogStatus,
    RequestContext,
    ResourceType,
)
from photostudio.services.credit_service import deduct_credits, get_balance
from photostudio.services.library_service import image_response
from photostudio.services.validation import GenerateImageRequest, require_valid

log = structlog.get_logger()

PRODUCT_WITH_MODEL = "product_with_model"
PRODUCT_ONLY = "product_only"


async def generate_images(
    db: AsyncSession,
    client: GeminiImageClient,
    audit: AuditLogger,
    user: User,
    raw_body: Any,
    ctx: RequestContext,
) -> dict:
    user_id = user.user_id
    request = require_valid(GenerateImageRequest, raw_body)
    cost = settings.CREDITS_PER_GENERATION
    required = cost * request.num_variations

    available = await get_balance(db, user_id)
    if available < required:
        raise InsufficientCreditsError(extra={"required": required, "available": available})

    try:
        product_image = await fetch_source_image(request.product_image_url)
        model_image = (
            await fetch_source_image(request.model_image_url) if request.model_image_url else None
        )
    except ImageGenerationError as exc:
        log.warning("generation_source_unavailable", user_id=str(user_id), error=str(exc))
        raise ValidationError("Could not load the source image")

    generation_type = PRODUCT_WITH_MODEL if model_image is not None else PRODUCT_ONLY

    # ------------------------------------------------------------------
    # Generate and store each variation
    # ------------------------------------------------------------------
    stored: list[tuple[str, str | None]] = []
    for index in range(request.num_variations):
        try:
            png = await client.generate(request.prompt, product_image, model_image)
            _, url = media_storage.save_bytes(user_id, png, "png", prefix="gen_")
            try:
                _, thumb_url = media_storage.save_bytes(
                    user_id, media_storage.make_thumbnail(png), "jpg", prefix="thumb_"
                )
            except OSError as exc:
                log.warning("thumbnail_failed", error=str(exc))
                thumb_url = None
            stored.append((url, thumb_url))
        except (ImageGenerationError, OSError) as exc:
            log.warning("generation_variation_failed", user_id=str(user_id), index=index,
                        error=str(exc))

    if not stored:
        await audit.log_resource_event(
            user_id, AuditAction.IMAGE_GENERATED, ResourceType.IMAGE, None,
            {"status": "failed", "variations": request.num_variations}, ctx,
        )
        raise AppError("Failed to generate any images")

    # ------------------------------------------------------------------
    # Persist and debit per saved image
    # ------------------------------------------------------------------
    saved = []
    remaining = available
    for index, (url, thumb_url) in enumerate(stored):
        image_id = uuid.uuid4()
        db.add(Image(
            image_id=image_id,
            user_id=user_id,
            url=url,
            thumbnail_url=thumb_url,
            prompt=request.prompt,
            generation_type=generation_type,
            product_image_url=request.product_image_url,
            model_image_url=request.model_image_url,
            credits_used=cost,
            meta={"model": client.model},
        ))
        try:
            await db.flush()
            remaining = await deduct_credits(
                db, user_id, cost, description="Image generation", image_id=image_id
            )
        except InsufficientCreditsError:
            # Balance was spent concurrently; keep what is already paid for.
            await db.rollback()
            for unpaid_url, unpaid_thumb in stored[index:]:
                media_storage.delete_by_url(unpaid_url)
                media_storage.delete_by_url(unpaid_thumb)
            log.warning("generation_debit_failed", user_id=str(user_id), image_id=str(image_id),
                        discarded=len(stored) - index)
            break
        saved.append(image_id)
        await db.commit()

    if not saved:
        raise InsufficientCreditsError(extra={"required": cost, "available": 0})

    images = []
    for image_id in saved:
        image = await db.get(Image, image_id)
        images.append(image_response(image).model_dump(mode="json"))

    credits_used = len(saved) * cost
    await audit.log_resource_event(
        user_id, AuditAction.IMAGE_GENERATED, ResourceType.IMAGE, saved[0],
        {"count": len(saved), "generation_type": generation_type,
         "image_ids": [str(i) for i in saved]},
        ctx,
    )
    await audit.log_credit_event(
        user_id, AuditAction.CREDITS_USED, saved[0], LogStatus.SUCCESS,
        {"credits": credits_used, "remaining": remaining}, ctx,
    )
    log.info("images_generated", user_id=str(user_id), count=len(saved), credits_used=credits_used)

    return {
        "success": True,
        "images": images,
        "creditsUsed": credits_used,
        "remainingCredits": remaining,
    }
