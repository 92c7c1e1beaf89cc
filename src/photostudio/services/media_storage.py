"""Local media storage for uploads, generated images, and thumbnails.

Files live under ``MEDIA_DIR/<user_id>/`` and are served by the static
mount at ``MEDIA_URL_PREFIX``.
"""

from __future__ import annotations

import io
import secrets
from pathlib import Path
from uuid import UUID

import structlog
from PIL import Image as PILImage, UnidentifiedImageError

from photostudio.config import settings
from photostudio.errors import ValidationError

log = structlog.get_logger()

ALLOWED_CONTENT_TYPES = {
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
}

_PIL_FORMATS = {"JPEG": "jpg", "PNG": "png", "WEBP": "webp"}

THUMBNAIL_SIZE = (320, 320)


def media_root() -> Path:
    return Path(settings.MEDIA_DIR)


def _url_for(relative: Path) -> str:
    return f"{settings.MEDIA_URL_PREFIX.rstrip('/')}/{relative.as_posix()}"


def sniff_image_extension(data: bytes) -> str:
    """Return the file extension for *data*, rejecting anything Pillow cannot open."""
    try:
        with PILImage.open(io.BytesIO(data)) as img:
            fmt = img.format
            img.verify()
    except (UnidentifiedImageError, OSError, ValueError):
        raise ValidationError("Invalid file type. Only JPEG, PNG, and WebP are allowed.")
    ext = _PIL_FORMATS.get(fmt or "")
    if ext is None:
        raise ValidationError("Invalid file type. Only JPEG, PNG, and WebP are allowed.")
    return ext


def save_bytes(user_id: UUID, data: bytes, ext: str, prefix: str = "") -> tuple[Path, str]:
    """Write *data* to a fresh random name under the user's directory.

    Returns ``(path, url)``.
    """
    relative = Path(str(user_id)) / f"{prefix}{secrets.token_hex(8)}.{ext}"
    path = media_root() / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    return path, _url_for(relative)


def make_thumbnail(data: bytes) -> bytes:
    """Downscale to fit ``THUMBNAIL_SIZE`` and re-encode as JPEG."""
    with PILImage.open(io.BytesIO(data)) as img:
        img = img.convert("RGB")
        img.thumbnail(THUMBNAIL_SIZE)
        out = io.BytesIO()
        img.save(out, format="JPEG", quality=85)
        return out.getvalue()


def delete_by_url(url: str | None) -> bool:
    """Remove a stored file given its public URL; ignores foreign URLs."""
    prefix = settings.MEDIA_URL_PREFIX.rstrip("/") + "/"
    if not url or not url.startswith(prefix):
        return False
    root = media_root().resolve()
    path = (root / url[len(prefix):]).resolve()
    if root not in path.parents:
        log.warning("media_delete_outside_root", url=url)
        return False
    try:
        path.unlink()
        return True
    except FileNotFoundError:
        return False
    except OSError as exc:
        log.warning("media_delete_failed", url=url, error=str(exc))
        return False
