"""Source image upload endpoint -- /api/upload."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, File, Request, UploadFile

from photostudio.api.dependencies import (
    get_audit_logger,
    get_current_user,
    get_request_context,
    rate_limit,
)
from photostudio.config import settings
from photostudio.errors import ValidationError
from photostudio.models import User
from photostudio.services import media_storage
from photostudio.services.audit_logger import AuditAction, AuditLogger, RequestContext, ResourceType

router = APIRouter(prefix="/api/upload", tags=["uploads"])


@router.post("", dependencies=[Depends(rate_limit("upload", "FILE_UPLOAD"))])
async def upload_image(
    request: Request,
    file: Optional[UploadFile] = File(None),
    current_user: User = Depends(get_current_user),
    audit: AuditLogger = Depends(get_audit_logger),
    ctx: RequestContext = Depends(get_request_context),
):
    """Store a JPEG/PNG/WebP source image and return its public URL."""
    if file is None:
        raise ValidationError("No file provided")
    if (file.content_type or "").lower() not in media_storage.ALLOWED_CONTENT_TYPES:
        raise ValidationError("Invalid file type. Only JPEG, PNG, and WebP are allowed.")

    data = await file.read(settings.MAX_UPLOAD_BYTES + 1)
    if len(data) > settings.MAX_UPLOAD_BYTES:
        raise ValidationError("File too large. Maximum size is 10MB.")
    if not data:
        raise ValidationError("No file provided")

    # Trust the decoded format, not the client-declared type or filename.
    ext = media_storage.sniff_image_extension(data)
    user_id = current_user.user_id
    _, url = media_storage.save_bytes(user_id, data, ext)
    absolute_url = str(request.base_url).rstrip("/") + url

    await audit.log_resource_event(
        user_id, AuditAction.IMAGE_UPLOADED, ResourceType.IMAGE, None,
        {"url": url, "bytes": len(data), "content_type": file.content_type}, ctx,
    )
    return {"url": absolute_url, "path": url}
