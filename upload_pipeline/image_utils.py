# Copyright 2025 Google LLC
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
# ==============================================================================

from __future__ import annotations

import asyncio
import io
import logging
from typing import List, Optional, Sequence

from PIL import Image, UnidentifiedImageError

from backend.errors import GatewayError
from backend.gateway import RemoteGateway
from backend.retry import RetryPolicy, call_with_retry
from shared.remote_paths import entry_image_object

logger = logging.getLogger(__name__)

DEFAULT_JPEG_QUALITY = 80
JPEG_CONTENT_TYPE = "image/jpeg"


def compress_jpeg(data: bytes, quality: int = DEFAULT_JPEG_QUALITY) -> bytes:
    """
    Re-encodes image bytes as JPEG at the given quality.

    Args:
        data (bytes): Image bytes in any format Pillow can decode.
        quality (int): JPEG quality factor (1-95).

    Returns:
        bytes: The JPEG bytes, or `data` unchanged when it cannot be decoded.
    """
    try:
        with Image.open(io.BytesIO(data)) as img:
            rgb = img.convert("RGB")
            output = io.BytesIO()
            rgb.save(output, format="JPEG", quality=quality)
            return output.getvalue()
    except (UnidentifiedImageError, OSError, ValueError) as e:
        logger.warning("Could not re-encode image as JPEG, uploading original: %s", e)
        return data


class ImageUploadPipeline:
    """Sequences image uploads and downloads through a RemoteGateway."""

    def __init__(
        self,
        gateway: RemoteGateway,
        *,
        jpeg_quality: int = DEFAULT_JPEG_QUALITY,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.gateway = gateway
        self.jpeg_quality = jpeg_quality
        self.retry_policy = retry_policy or RetryPolicy()

    async def upload_one(
        self, data: bytes, path: str, content_type: str = JPEG_CONTENT_TYPE
    ) -> Optional[str]:
        """Uploads `data` to `path` and returns its download URL, or None on failure."""
        try:
            return await call_with_retry(
                lambda: self.gateway.upload(data, path, content_type),
                policy=self.retry_policy,
                description=f"Upload of {path}",
            )
        except GatewayError as e:
            logger.warning("Storage upload failed for %s: %s", path, e)
            return None

    async def upload_entry_images(
        self, couple_id: str, entry_id: str, images: Sequence[bytes]
    ) -> List[str]:
        """
        Uploads an entry's images one after another.

        Each image is recompressed to JPEG and stored under
        `couples/{couple_id}/entries/{entry_id}/img_{index}.jpg`, where index
        is its position in `images`. The returned URLs keep the order of
        `images`; failed uploads are left out.
        """
        urls: List[str] = []
        for index, data in enumerate(images):
            jpeg = await asyncio.to_thread(compress_jpeg, data, self.jpeg_quality)
            url = await self.upload_one(
                jpeg, entry_image_object(couple_id, entry_id, index)
            )
            if url:
                urls.append(url)
        return urls

    async def _fetch(self, url: str) -> Optional[bytes]:
        try:
            return await self.gateway.download(url)
        except GatewayError as e:
            logger.warning("Image download failed for %s: %s", url, e)
            return None

    async def hydrate_images(self, urls: Sequence[str]) -> List[bytes]:
        """Downloads all `urls` concurrently and returns the successful payloads."""
        fetches = [self._fetch(url) for url in urls if url]
        if not fetches:
            return []
        results = await asyncio.gather(*fetches)
        return [data for data in results if data is not None]
