from __future__ import annotations

import asyncio

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx

from facegate.config import REFERENCE_FETCH_TIMEOUT, REFERENCE_IMAGE_SUFFIXES
from facegate.utils.log import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class ReferenceEntry:
    identity_id: str
    image_url: str


class ReferenceStore(ABC):
    """Source of reference photos: an ordered list of (identity_id, image_url)."""

    @abstractmethod
    async def list_references(self) -> List[ReferenceEntry]:
        ...


def _entry_from_record(record: Dict[str, Any]) -> Optional[ReferenceEntry]:
    identity = record.get("identity_id", record.get("id"))
    url = record.get("image_url")
    if identity is None or not url:
        return None
    return ReferenceEntry(identity_id=str(identity), image_url=str(url))


class HttpReferenceStore(ReferenceStore):
    """Reference listing served as JSON over HTTP.

    Accepts either a bare array of records or an object wrapping them in `data`
    (the shape the photo table endpoint returns). Each record needs `image_url`
    and `identity_id` (falls back to `id`); malformed records are skipped.
    """

    def __init__(
        self,
        url: str,
        *,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = REFERENCE_FETCH_TIMEOUT,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.url = url
        self.timeout = float(timeout)
        self.headers = dict(headers or {})
        self._client = client

    async def _get(self, client: httpx.AsyncClient) -> Any:
        response = await client.get(self.url, headers=self.headers, timeout=self.timeout)
        response.raise_for_status()
        return response.json()

    async def list_references(self) -> List[ReferenceEntry]:
        if self._client is not None:
            payload = await self._get(self._client)
        else:
            async with httpx.AsyncClient() as client:
                payload = await self._get(client)

        records = payload.get("data") if isinstance(payload, dict) else payload
        if not isinstance(records, list):
            raise ValueError(f"unexpected reference listing from {self.url}: {type(payload).__name__}")

        entries: List[ReferenceEntry] = []
        for record in records:
            entry = _entry_from_record(record) if isinstance(record, dict) else None
            if entry is None:
                logger.warning(f"忽略无效的参考记录: {record!r}")
                continue
            entries.append(entry)
        logger.info(f"参考照片列表: {len(entries)} 条 ({self.url})")
        return entries


class DirectoryReferenceStore(ReferenceStore):
    """Gallery directory: one sub-directory per identity holding its photos."""

    def __init__(self, root: str):
        self.root = Path(root)

    def _scan(self) -> List[ReferenceEntry]:
        if not self.root.is_dir():
            raise FileNotFoundError(f"gallery directory not found: {self.root}")

        entries: List[ReferenceEntry] = []
        for person_dir in sorted(p for p in self.root.iterdir() if p.is_dir()):
            # 后缀不区分大小写，避免漏掉 0001.JPG 这类文件
            image_files = sorted(
                p for p in person_dir.iterdir() if p.is_file() and p.suffix.lower() in REFERENCE_IMAGE_SUFFIXES
            )
            logger.info(f"处理 {person_dir.name}: {len(image_files)} 张图像")
            for img_file in image_files:
                entries.append(ReferenceEntry(identity_id=person_dir.name, image_url=str(img_file.resolve())))
        return entries

    async def list_references(self) -> List[ReferenceEntry]:
        return await asyncio.to_thread(self._scan)
