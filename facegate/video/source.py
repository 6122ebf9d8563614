from __future__ import annotations

import asyncio
import threading
import time

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional, Union

import cv2
import numpy as np

from facegate.utils.log import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class Frame:
    """A still snapshot of the video feed."""

    image: np.ndarray  # BGR uint8 (H, W, 3)
    captured_at: float = field(default_factory=time.time)


class FrameSource(ABC):
    """Anything that can hand out the current frame as a still image."""

    @abstractmethod
    async def grab(self) -> Optional[Frame]:
        """Return the current frame, or None when the source has nothing to give."""

    def close(self) -> None:
        pass


def _parse_source(source: Union[int, str]) -> Union[int, str]:
    if isinstance(source, int):
        return source
    s = str(source).strip()
    return int(s) if s.isdigit() else s


class CameraFrameSource(FrameSource):
    """OpenCV capture device: camera index, stream URL or video file.

    The device is opened lazily on first grab and re-opened after a failed read.
    """

    def __init__(self, source: Union[int, str] = 0, width: Optional[int] = None, height: Optional[int] = None):
        self.source = _parse_source(source)
        self.width = width
        self.height = height
        self._cap: Optional[cv2.VideoCapture] = None
        self._io_lock = threading.Lock()

    def _open(self) -> cv2.VideoCapture:
        cap = cv2.VideoCapture(self.source)
        if not cap.isOpened():
            cap.release()
            raise RuntimeError(f"Camera not opened: {self.source!r}")
        if self.width:
            cap.set(cv2.CAP_PROP_FRAME_WIDTH, int(self.width))
        if self.height:
            cap.set(cv2.CAP_PROP_FRAME_HEIGHT, int(self.height))
        logger.info(f"已打开视频源: {self.source!r}")
        return cap

    def _read(self) -> Optional[Frame]:
        with self._io_lock:
            if self._cap is None:
                self._cap = self._open()
            ok, image = self._cap.read()
            if not ok or image is None:
                logger.warning(f"读取视频帧失败: {self.source!r}")
                self._cap.release()
                self._cap = None
                return None
            return Frame(image=image)

    async def grab(self) -> Optional[Frame]:
        return await asyncio.to_thread(self._read)

    def close(self) -> None:
        with self._io_lock:
            if self._cap is not None:
                self._cap.release()
                self._cap = None
