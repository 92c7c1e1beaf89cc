"""Image generation endpoint -- /api/generate."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from photostudio.api.dependencies import (
    get_audit_logger,
    get_current_user,
    get_image_client,
    get_request_context,
    rate_limit,
)
from photostudio.database import get_db
from photostudio.integrations.gemini_client import GeminiImageClient
from photostudio.models import User
from photostudio.services.audit_logger import AuditLogger, RequestContext
from photostudio.services.generation_service import generate_images
from photostudio.services.validation import read_json_body

router = APIRouter(prefix="/api/generate", tags=["generation"])


@router.post("", dependencies=[Depends(rate_limit("generate", "IMAGE_GENERATION"))])
async def generate(
    request: Request,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    client: GeminiImageClient = Depends(get_image_client),
    audit: AuditLogger = Depends(get_audit_logger),
    ctx: RequestContext = Depends(get_request_context),
):
    """Generate product photos, debiting credits per saved image."""
    body = await read_json_body(request)
    return await generate_images(db, client, audit, current_user, body, ctx)
