from __future__ import annotations

import asyncio

from pathlib import Path
from typing import List, Optional, Sequence, Tuple
from urllib.parse import unquote, urlparse

import cv2
import httpx
import numpy as np

from facegate.config import REFERENCE_FETCH_TIMEOUT
from facegate.face.descriptor import DescriptorExtractor
from facegate.face.gallery import ReferenceSet
from facegate.store.references import ReferenceEntry
from facegate.utils.log import get_logger

logger = get_logger(__name__)


def decode_image(data: bytes) -> np.ndarray:
    """Decode encoded image bytes (jpg/png/...) into a BGR array."""
    buf = np.frombuffer(data, dtype=np.uint8)
    image = cv2.imdecode(buf, cv2.IMREAD_COLOR) if buf.size else None
    if image is None:
        raise ValueError("无法解码图像数据")
    return image


class ImageFetcher:
    """Loads reference images from http(s) URLs, file:// URLs or plain paths."""

    def __init__(self, client: Optional[httpx.AsyncClient] = None, timeout: float = REFERENCE_FETCH_TIMEOUT):
        self._client = client
        self.timeout = float(timeout)

    async def _fetch_bytes(self, url: str) -> bytes:
        parsed = urlparse(url)
        if parsed.scheme in ("http", "https"):
            if self._client is not None:
                response = await self._client.get(url, timeout=self.timeout)
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.get(url, timeout=self.timeout)
            response.raise_for_status()
            return response.content

        path = Path(unquote(parsed.path)) if parsed.scheme == "file" else Path(url)
        return await asyncio.to_thread(path.read_bytes)

    async def fetch(self, url: str) -> np.ndarray:
        data = await self._fetch_bytes(url)
        return decode_image(data)


class ReferenceIndexBuilder:
    """Turns a reference photo listing into a ReferenceSet.

    Entries are processed one at a time; any entry that has no face, cannot be
    fetched/decoded, or makes the extractor fail is logged and dropped, and the
    build carries on with the rest.
    """

    def __init__(self, extractor: DescriptorExtractor, fetcher: Optional[ImageFetcher] = None):
        self.extractor = extractor
        self.fetcher = fetcher or ImageFetcher()

    async def _describe_entry(self, entry: ReferenceEntry) -> Optional[np.ndarray]:
        image = await self.fetcher.fetch(entry.image_url)
        face = await self.extractor.describe(image)
        if face is None:
            return None
        return face.descriptor

    async def build(self, entries: Sequence[ReferenceEntry]) -> ReferenceSet:
        logger.info(f"开始构建参考人脸索引: {len(entries)} 张参考照片")

        pairs: List[Tuple[str, np.ndarray]] = []
        skipped = 0
        for entry in entries:
            try:
                descriptor = await self._describe_entry(entry)
            except Exception as e:
                skipped += 1
                logger.error(f"处理参考照片失败 {entry.identity_id} ({entry.image_url}): {e}")
                continue

            if descriptor is None:
                skipped += 1
                logger.warning(f"参考照片中未检测到人脸: {entry.identity_id} ({entry.image_url})")
                continue
            pairs.append((entry.identity_id, descriptor))

        reference_set = ReferenceSet.from_pairs(pairs)
        logger.info(
            f"参考索引构建完成: {len(reference_set)} 个身份, {len(pairs)}/{len(entries)} 张照片"
            + (f", 跳过 {skipped} 张" if skipped else "")
        )
        return reference_set
