"""Async Gemini image-generation client for product photoshoots.

Source images are fetched with httpx (or read straight from the local media
directory when the URL points at it) and sent to the model as inline image
parts.  The first inline image in the response is returned as PNG bytes.
"""

from __future__ import annotations

import io
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlparse

import httpx
import structlog
from google import genai
from google.genai import types
from PIL import Image as PILImage

from photostudio.config import settings
from photostudio.services import media_storage

log = structlog.get_logger()

MAX_SOURCE_BYTES = 20 * 1024 * 1024
FETCH_TIMEOUT_SECONDS = 20.0

PRODUCT_WITH_MODEL_PROMPT = (
    "Create a professional advertising photoshoot image combining this product "
    "with this model. {prompt}"
)
PRODUCT_ONLY_PROMPT = "Create a professional product advertising image for this product. {prompt}"


# ---------------------------------------------------------------------------
# Custom exceptions
# ---------------------------------------------------------------------------

class ImageGenerationError(Exception):
    """Raised when a source image cannot be used or the model returns no image."""


@dataclass
class SourceImage:
    data: bytes
    mime_type: str


# ---------------------------------------------------------------------------
# Source images
# ---------------------------------------------------------------------------

def _local_media_path(url: str) -> Path | None:
    path = urlparse(url).path
    prefix = settings.MEDIA_URL_PREFIX.rstrip("/") + "/"
    if not path.startswith(prefix):
        return None
    root = media_storage.media_root().resolve()
    candidate = (root / path[len(prefix):]).resolve()
    if root in candidate.parents and candidate.is_file():
        return candidate
    return None


async def fetch_source_image(url: str, client: httpx.AsyncClient | None = None) -> SourceImage:
    """Load a source image from local media or over HTTP."""
    local = _local_media_path(url)
    if local is not None:
        data = local.read_bytes()
        ext = local.suffix.lstrip(".").lower()
        return SourceImage(data=data, mime_type=f"image/{'jpeg' if ext == 'jpg' else ext}")

    owns_client = client is None
    client = client or httpx.AsyncClient(timeout=FETCH_TIMEOUT_SECONDS, follow_redirects=True)
    try:
        async with client.stream("GET", url) as response:
            response.raise_for_status()
            content_type = response.headers.get("content-type", "image/jpeg").split(";")[0].strip()
            if not content_type.startswith("image/"):
                raise ImageGenerationError(f"Source is not an image ({content_type})")

            # Stop reading as soon as the cap is crossed.
            data = bytearray()
            async for chunk in response.aiter_bytes():
                data.extend(chunk)
                if len(data) > MAX_SOURCE_BYTES:
                    raise ImageGenerationError("Source image is too large")
    except httpx.TimeoutException:
        raise ImageGenerationError(f"Timed out fetching source image: {url}")
    except httpx.HTTPError as exc:
        raise ImageGenerationError(f"Could not fetch source image: {exc}")
    finally:
        if owns_client:
            await client.aclose()

    return SourceImage(data=bytes(data), mime_type=content_type)


# ---------------------------------------------------------------------------
# GeminiImageClient
# ---------------------------------------------------------------------------

class GeminiImageClient:
    """Generates product images with a Gemini image model."""

    def __init__(self, api_key: str | None = None, model: str | None = None, client=None):
        self.api_key = api_key if api_key is not None else settings.GEMINI_API_KEY
        self.model = model or settings.GEMINI_IMAGE_MODEL
        self._client = client

    def _get_client(self):
        if self._client is None:
            if not self.api_key:
                raise ImageGenerationError("GEMINI_API_KEY is not configured")
            self._client = genai.Client(api_key=self.api_key)
        return self._client

    @staticmethod
    def build_prompt(prompt: str, with_model: bool) -> str:
        template = PRODUCT_WITH_MODEL_PROMPT if with_model else PRODUCT_ONLY_PROMPT
        return template.format(prompt=prompt)

    async def generate(
        self,
        prompt: str,
        product_image: SourceImage,
        model_image: SourceImage | None = None,
    ) -> bytes:
        """Return PNG bytes for one generated variation."""
        contents: list = [self.build_prompt(prompt, model_image is not None)]
        contents.append(types.Part.from_bytes(data=product_image.data, mime_type=product_image.mime_type))
        if model_image is not None:
            contents.append(types.Part.from_bytes(data=model_image.data, mime_type=model_image.mime_type))

        try:
            response = await self._get_client().aio.models.generate_content(
                model=self.model,
                contents=contents,
                config=types.GenerateContentConfig(response_modalities=["IMAGE", "TEXT"]),
            )
        except ImageGenerationError:
            raise
        except Exception as exc:
            log.error("gemini_request_failed", model=self.model, error=str(exc))
            raise ImageGenerationError(str(exc))

        image_bytes = None
        for candidate in response.candidates or []:
            content = candidate.content
            for part in (content.parts if content else None) or []:
                if part.inline_data and part.inline_data.data:
                    image_bytes = part.inline_data.data
                    break
            if image_bytes:
                break
        if not image_bytes:
            raise ImageGenerationError("No image was generated in the response")

        # Normalise whatever the model returned to PNG.
        with PILImage.open(io.BytesIO(image_bytes)) as img:
            out = io.BytesIO()
            img.save(out, format="PNG")
            return out.getvalue()
