"""Folders and saved images -- CRUD scoped to the owning user."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

import structlog
from pydantic import BaseModel
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from photostudio.errors import ConflictError, NotFoundError, ValidationError
from photostudio.models import Folder, Image
from photostudio.services import media_storage
from photostudio.services.audit_logger import AuditAction, AuditLogger, RequestContext, ResourceType
from photostudio.services.validation import (
    CreateFolderRequest,
    UpdateFolderRequest,
    require_valid,
)

log = structlog.get_logger()

_DUPLICATE_FOLDER = "A folder with this name already exists"


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------

class FolderResponse(BaseModel):
    id: uuid.UUID
    name: str
    description: str
    image_count: int = 0
    created_at: datetime
    updated_at: datetime


class ImageResponse(BaseModel):
    id: uuid.UUID
    folder_id: Optional[uuid.UUID] = None
    url: str
    thumbnail_url: Optional[str] = None
    prompt: str
    generation_type: str
    product_image_url: str
    model_image_url: Optional[str] = None
    credits_used: int
    metadata: dict
    created_at: datetime


def _folder_response(folder: Folder, image_count: int = 0) -> FolderResponse:
    return FolderResponse(
        id=folder.folder_id,
        name=folder.name,
        description=folder.description or "",
        image_count=image_count,
        created_at=folder.created_at,
        updated_at=folder.updated_at,
    )


def image_response(image: Image) -> ImageResponse:
    return ImageResponse(
        id=image.image_id,
        folder_id=image.folder_id,
        url=image.url,
        thumbnail_url=image.thumbnail_url,
        prompt=image.prompt,
        generation_type=image.generation_type,
        product_image_url=image.product_image_url,
        model_image_url=image.model_image_url,
        credits_used=image.credits_used,
        metadata=image.meta or {},
        created_at=image.created_at,
    )


def parse_id(value: Any, label: str) -> uuid.UUID:
    if value is None or value == "":
        raise ValidationError(f"{label} ID is required")
    try:
        return uuid.UUID(str(value))
    except ValueError:
        raise NotFoundError(f"{label} not found")


async def get_owned_folder(db: AsyncSession, user_id: uuid.UUID, folder_id: uuid.UUID) -> Folder:
    result = await db.execute(
        select(Folder).where(Folder.folder_id == folder_id, Folder.user_id == user_id)
    )
    folder = result.scalar_one_or_none()
    if folder is None:
        raise NotFoundError("Folder not found")
    return folder


async def _get_owned_image(db: AsyncSession, user_id: uuid.UUID, image_id: uuid.UUID) -> Image:
    result = await db.execute(
        select(Image).where(Image.image_id == image_id, Image.user_id == user_id)
    )
    image = result.scalar_one_or_none()
    if image is None:
        raise NotFoundError("Image not found")
    return image


# ---------------------------------------------------------------------------
# Folders
# ---------------------------------------------------------------------------

async def list_folders(db: AsyncSession, user_id: uuid.UUID) -> list[FolderResponse]:
    counts = (
        select(Image.folder_id, func.count().label("n"))
        .where(Image.user_id == user_id, Image.folder_id.is_not(None))
        .group_by(Image.folder_id)
        .subquery()
    )
    result = await db.execute(
        select(Folder, func.coalesce(counts.c.n, 0))
        .outerjoin(counts, counts.c.folder_id == Folder.folder_id)
        .where(Folder.user_id == user_id)
        .order_by(Folder.created_at.desc())
    )
    return [_folder_response(folder, count) for folder, count in result.all()]


async def create_folder(
    db: AsyncSession,
    audit: AuditLogger,
    user_id: uuid.UUID,
    raw_body: Any,
    ctx: RequestContext,
) -> FolderResponse:
    request = require_valid(CreateFolderRequest, raw_body)
    folder = Folder(user_id=user_id, name=request.name.strip(), description=request.description or "")
    db.add(folder)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise ConflictError(_DUPLICATE_FOLDER)

    response = _folder_response(folder)
    await audit.log_resource_event(
        user_id, AuditAction.FOLDER_CREATED, ResourceType.FOLDER, response.id,
        {"name": response.name}, ctx,
    )
    return response


async def update_folder(
    db: AsyncSession,
    audit: AuditLogger,
    user_id: uuid.UUID,
    raw_body: Any,
    ctx: RequestContext,
) -> FolderResponse:
    request = require_valid(UpdateFolderRequest, raw_body)
    folder = await get_owned_folder(db, user_id, parse_id(request.folder_id, "Folder"))

    changes = {}
    if request.name is not None:
        folder.name = changes["name"] = request.name.strip()
    if request.description is not None:
        folder.description = changes["description"] = request.description
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise ConflictError(_DUPLICATE_FOLDER)

    response = _folder_response(folder)
    await audit.log_resource_event(
        user_id, AuditAction.FOLDER_UPDATED, ResourceType.FOLDER, response.id, changes, ctx,
    )
    return response


async def delete_folder(
    db: AsyncSession,
    audit: AuditLogger,
    user_id: uuid.UUID,
    folder_id: Any,
    ctx: RequestContext,
) -> None:
    """Delete a folder; its images stay in the library with no folder."""
    folder = await get_owned_folder(db, user_id, parse_id(folder_id, "Folder"))
    fid = folder.folder_id
    # SQLite does not enforce ON DELETE SET NULL without a pragma; detach explicitly.
    await db.execute(update(Image).where(Image.folder_id == fid).values(folder_id=None))
    await db.execute(delete(Folder).where(Folder.folder_id == fid))
    await db.commit()

    await audit.log_resource_event(
        user_id, AuditAction.FOLDER_DELETED, ResourceType.FOLDER, fid, {}, ctx,
    )


# ---------------------------------------------------------------------------
# Images
# ---------------------------------------------------------------------------

async def list_images(
    db: AsyncSession,
    user_id: uuid.UUID,
    folder_id: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[ImageResponse]:
    if limit < 1 or limit > 200:
        raise ValidationError("limit must be between 1 and 200")
    if offset < 0:
        raise ValidationError("offset must be non-negative")

    stmt = select(Image).where(Image.user_id == user_id)
    if folder_id and folder_id != "all":
        stmt = stmt.where(Image.folder_id == parse_id(folder_id, "Folder"))
    stmt = stmt.order_by(Image.created_at.desc()).limit(limit).offset(offset)

    result = await db.execute(stmt)
    return [image_response(image) for image in result.scalars().all()]


async def move_image(
    db: AsyncSession,
    user_id: uuid.UUID,
    raw_body: Any,
) -> ImageResponse:
    """Move an image into a folder, or out of any folder when folderId is null."""
    if not isinstance(raw_body, dict):
        raise ValidationError("Request body must be a JSON object")
    image = await _get_owned_image(db, user_id, parse_id(raw_body.get("imageId"), "Image"))

    target = raw_body.get("folderId")
    if target is None:
        image.folder_id = None
    else:
        folder = await get_owned_folder(db, user_id, parse_id(target, "Folder"))
        image.folder_id = folder.folder_id
    await db.commit()
    return image_response(image)


async def delete_image(
    db: AsyncSession,
    audit: AuditLogger,
    user_id: uuid.UUID,
    image_id: Any,
    ctx: RequestContext,
) -> None:
    image = await _get_owned_image(db, user_id, parse_id(image_id, "Image"))
    iid, url, thumbnail_url = image.image_id, image.url, image.thumbnail_url
    await db.execute(delete(Image).where(Image.image_id == iid))
    await db.commit()

    media_storage.delete_by_url(url)
    media_storage.delete_by_url(thumbnail_url)
    await audit.log_resource_event(
        user_id, AuditAction.IMAGE_DELETED, ResourceType.IMAGE, iid, {}, ctx,
    )
