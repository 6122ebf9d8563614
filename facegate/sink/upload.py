"""Upload sink: forwards raw captures (plus optional coordinates) to a storage endpoint.

Request body: ``{"image": "data:image/png;base64,...", "latitude": float|null,
"longitude": float|null}``. A 2xx JSON answer with ``success`` true is a stored
record; anything else is a failure with a readable message. Failures are returned,
never raised, and never retried.
"""

from __future__ import annotations

import asyncio
import base64

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import cv2
import httpx
import numpy as np

from facegate.config import UPLOAD_IMAGE_FORMAT, UPLOAD_TIMEOUT
from facegate.utils.log import get_logger

logger = get_logger(__name__)

_MIME_BY_EXT = {".png": "image/png", ".jpg": "image/jpeg", ".jpeg": "image/jpeg"}


@dataclass(frozen=True)
class UploadResult:
    ok: bool
    record: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    status_code: Optional[int] = None


@dataclass
class UploadConfig:
    url: str
    timeout: float = UPLOAD_TIMEOUT
    image_format: str = UPLOAD_IMAGE_FORMAT


def encode_data_url(image: np.ndarray, ext: str = UPLOAD_IMAGE_FORMAT) -> str:
    ext = ext.lower()
    mime = _MIME_BY_EXT.get(ext)
    if mime is None:
        raise ValueError(f"Unsupported image format: {ext}")
    ok, buf = cv2.imencode(ext, image)
    if not ok:
        raise ValueError("图像编码失败")
    return f"data:{mime};base64,{base64.b64encode(buf.tobytes()).decode('ascii')}"


class GeoLocator(ABC):
    @abstractmethod
    async def locate(self) -> Optional[Tuple[float, float]]:
        """(latitude, longitude) or None when unknown."""


class StaticGeoLocator(GeoLocator):
    """Fixed coordinates, e.g. a camera with a known mounting position."""

    def __init__(self, latitude: Optional[float] = None, longitude: Optional[float] = None):
        if (latitude is None) != (longitude is None):
            raise ValueError("latitude and longitude must be given together")
        self.latitude = latitude
        self.longitude = longitude

    async def locate(self) -> Optional[Tuple[float, float]]:
        if self.latitude is None:
            return None
        return float(self.latitude), float(self.longitude)


class UploadSink:
    def __init__(self, config: UploadConfig, client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self._client = client

    async def _post(self, client: httpx.AsyncClient, payload: Dict[str, Any]) -> httpx.Response:
        return await client.post(self.config.url, json=payload, timeout=self.config.timeout)

    async def submit(
        self,
        image: np.ndarray,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
    ) -> UploadResult:
        try:
            # PNG 编码整帧较慢，放到线程里做，避免阻塞抓拍定时器
            data_url = await asyncio.to_thread(encode_data_url, image, self.config.image_format)
            payload = {
                "image": data_url,
                "latitude": latitude,
                "longitude": longitude,
            }
        except Exception as e:
            logger.error(f"上传前编码失败: {e}")
            return UploadResult(ok=False, error=str(e))

        try:
            if self._client is not None:
                response = await self._post(self._client, payload)
            else:
                async with httpx.AsyncClient() as client:
                    response = await self._post(client, payload)
        except httpx.TimeoutException:
            logger.error(f"上传超时: {self.config.url}")
            return UploadResult(ok=False, error="upload timed out")
        except httpx.HTTPError as e:
            logger.error(f"上传失败: {e}")
            return UploadResult(ok=False, error=str(e) or type(e).__name__)

        try:
            body = response.json()
        except ValueError:
            body = None

        if response.is_success and isinstance(body, dict) and body.get("success", True):
            logger.info(f"上传成功: status={response.status_code}")
            return UploadResult(ok=True, record=body.get("data"), status_code=response.status_code)

        message = None
        if isinstance(body, dict):
            message = body.get("error") or body.get("message")
        if not message:
            message = f"HTTP {response.status_code}"
        logger.error(f"上传被拒绝: {message}")
        return UploadResult(ok=False, error=str(message), status_code=response.status_code)
