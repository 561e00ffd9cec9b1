"""
Thumbnail generation.

Two halves:
 - `ThumbnailRequester.request` is what the batch path calls after saving a
   record. It schedules a detached task and returns nothing; the batch
   never learns whether the thumbnail was produced.
 - `generate_thumbnail` does the actual work behind POST /generate-thumbnail:
   download, centre-crop to a square WebP with Pillow, upload, update record.
"""

from __future__ import annotations

import asyncio
import logging
from io import BytesIO
from typing import Optional, Set

import httpx
from PIL import Image, ImageOps

from . import config
from .records import SqlRecordStore
from .storage import R2Storage, download_image

logger = logging.getLogger(__name__)

# Strong references to in-flight requests so they are not garbage collected.
_background_tasks: Set["asyncio.Task[None]"] = set()


def make_thumbnail(image_bytes: bytes, size: int = 400, quality: int = 70) -> bytes:
    """Centre-crop and resize to `size`x`size`, encoded as WebP."""
    try:
        image = Image.open(BytesIO(image_bytes)).convert("RGB")
    except Exception as exc:  # noqa: BLE001
        raise ValueError("Invalid image data") from exc

    thumb = ImageOps.fit(image, (size, size), method=Image.LANCZOS, centering=(0.5, 0.5))
    buf = BytesIO()
    thumb.save(buf, format="WEBP", quality=quality)
    return buf.getvalue()


def _log_request_result(task: "asyncio.Task[None]") -> None:
    _background_tasks.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Thumbnail generation failed: %s", exc)


class ThumbnailRequester:
    def __init__(
        self,
        endpoint_url: str,
        timeout_seconds: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.endpoint_url = endpoint_url
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Optional[config.Settings] = None) -> "ThumbnailRequester":
        settings = settings or config.get_settings()
        return cls(
            endpoint_url=settings.app_url.rstrip("/") + "/generate-thumbnail",
            timeout_seconds=settings.request_timeout_seconds,
        )

    def request(self, image_url: str, image_id: str) -> None:
        task = asyncio.get_running_loop().create_task(self._post(image_url, image_id))
        _background_tasks.add(task)
        task.add_done_callback(_log_request_result)

    async def _post(self, image_url: str, image_id: str) -> None:
        async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
            resp = await client.post(self.endpoint_url, json={"imageUrl": image_url, "imageId": image_id})
            resp.raise_for_status()
        logger.debug("Thumbnail requested for image=%s", image_id)


async def generate_thumbnail(
    image_url: str,
    image_id: str,
    storage: R2Storage,
    records: SqlRecordStore,
    settings: Optional[config.Settings] = None,
) -> str:
    """Build and store the thumbnail for one image record; returns its public URL."""
    settings = settings or config.get_settings()
    data, _ = await asyncio.to_thread(download_image, image_url, settings.request_timeout_seconds)
    thumb = await asyncio.to_thread(
        make_thumbnail, data, settings.thumbnail_size, settings.thumbnail_quality
    )
    thumb_url = await asyncio.to_thread(storage.put_bytes, f"thumbs/{image_id}.webp", thumb, "image/webp")

    if not await records.set_thumb_url(image_id, thumb_url):
        logger.warning("Thumbnail stored but no image record matched id=%s", image_id)
    return thumb_url
