"""Folder and saved-image endpoints -- /api/folders, /api/images."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from photostudio.api.dependencies import (
    get_audit_logger,
    get_current_user,
    get_request_context,
    rate_limit,
)
from photostudio.database import get_db
from photostudio.models import User
from photostudio.services import library_service
from photostudio.services.audit_logger import AuditLogger, RequestContext
from photostudio.services.validation import read_json_body, sanitize_value

router = APIRouter(tags=["library"], dependencies=[Depends(rate_limit("library", "API_GENERAL"))])


# ---------------------------------------------------------------------------
# Folders
# ---------------------------------------------------------------------------

@router.get("/api/folders")
async def list_folders(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    folders = await library_service.list_folders(db, current_user.user_id)
    return {"folders": [f.model_dump(mode="json") for f in folders]}


@router.post("/api/folders")
async def create_folder(
    request: Request,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    audit: AuditLogger = Depends(get_audit_logger),
    ctx: RequestContext = Depends(get_request_context),
):
    body = await read_json_body(request)
    folder = await library_service.create_folder(db, audit, current_user.user_id, body, ctx)
    return {"folder": folder.model_dump(mode="json")}


@router.patch("/api/folders")
async def update_folder(
    request: Request,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    audit: AuditLogger = Depends(get_audit_logger),
    ctx: RequestContext = Depends(get_request_context),
):
    body = await read_json_body(request)
    folder = await library_service.update_folder(db, audit, current_user.user_id, body, ctx)
    return {"folder": folder.model_dump(mode="json")}


@router.delete("/api/folders")
async def delete_folder(
    id: Optional[str] = Query(None),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    audit: AuditLogger = Depends(get_audit_logger),
    ctx: RequestContext = Depends(get_request_context),
):
    await library_service.delete_folder(db, audit, current_user.user_id, id, ctx)
    return {"success": True}


# ---------------------------------------------------------------------------
# Images
# ---------------------------------------------------------------------------

@router.get("/api/images")
async def list_images(
    folderId: Optional[str] = Query(None),
    limit: int = Query(50),
    offset: int = Query(0),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    images = await library_service.list_images(db, current_user.user_id, folderId, limit, offset)
    return {"images": [i.model_dump(mode="json") for i in images]}


@router.patch("/api/images")
async def move_image(
    request: Request,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    body = sanitize_value(await read_json_body(request))
    image = await library_service.move_image(db, current_user.user_id, body)
    return {"image": image.model_dump(mode="json")}


@router.delete("/api/images")
async def delete_image(
    id: Optional[str] = Query(None),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    audit: AuditLogger = Depends(get_audit_logger),
    ctx: RequestContext = Depends(get_request_context),
):
    await library_service.delete_image(db, audit, current_user.user_id, id, ctx)
    return {"success": True}
