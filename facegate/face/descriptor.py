"""Face model provider interface and the descriptor extractor built on it.

The provider is synchronous (model inference is CPU/GPU bound). `DescriptorExtractor`
exposes the same two capabilities as awaitables by running the provider in a worker
thread, so the event loop (and the capture timer) keeps running while a model call
is in flight.
"""

from __future__ import annotations

import asyncio
import io

from abc import ABC, abstractmethod
from contextlib import redirect_stderr, redirect_stdout
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from facegate.config import INSIGHTFACE_DET_SIZE, INSIGHTFACE_MODEL, MIN_DET_SCORE
from facegate.utils.log import get_logger, suppress_fds
from facegate.utils.math import l2_normalize

logger = get_logger(__name__)

# 进程内模型缓存：同一进程内多次构造 provider（例如 pytest 多用例）时避免重复加载模型。
_FACEAPP_CACHE: Dict[Tuple, Any] = {}


@dataclass(frozen=True)
class DetectedFace:
    bbox: Tuple[int, int, int, int]  # xyxy in frame coords
    det_score: float
    descriptor: np.ndarray


class FaceModelProvider(ABC):
    """Capability set the recognition core needs from a face model."""

    @abstractmethod
    def detect_existence(self, image: np.ndarray) -> bool:
        """Cheap check: is there at least one face in the image."""

    @abstractmethod
    def detect_and_describe(self, image: np.ndarray) -> Optional[DetectedFace]:
        """Full pass: detect the best face and compute its descriptor, or None."""


@dataclass
class InsightFaceConfig:
    model_name: str = INSIGHTFACE_MODEL
    det_size: int = INSIGHTFACE_DET_SIZE
    # 'auto'/'cpu'/'gpu'
    device: str = "auto"
    min_det_score: float = MIN_DET_SCORE


class InsightFaceProvider(FaceModelProvider):
    """InsightFace (ArcFace + RetinaFace/SCRFD) backed provider.

    The existence check only runs the detection model (`det_model.detect`), while the
    full pass runs detection + recognition through `FaceAnalysis.get`.
    """

    def __init__(self, config: Optional[InsightFaceConfig] = None):
        self.config = config or InsightFaceConfig()
        self.det_size: Tuple[int, int] = (int(self.config.det_size), int(self.config.det_size))
        self.ctx_id = -1
        self._app = None
        self._initialize_model()

    def _resolve_providers(self) -> List[str]:
        device = str(self.config.device).lower()
        if device == "auto":
            try:
                import torch

                device = "gpu" if torch.cuda.is_available() else "cpu"
            except Exception:
                device = "cpu"

        if device == "gpu":
            self.ctx_id = 0
            return ["CUDAExecutionProvider"]
        self.ctx_id = -1
        return ["CPUExecutionProvider"]

    def _initialize_model(self) -> None:
        """初始化 InsightFace 模型"""
        try:
            providers = self._resolve_providers()
            key = (
                str(self.config.model_name),
                tuple(providers),
                int(self.ctx_id),
                self.det_size,
            )
            cached = _FACEAPP_CACHE.get(key)
            if cached is not None:
                self._app = cached
                return

            # 懒加载：只有真正需要模型时才引入 insightface
            from insightface.app import FaceAnalysis

            with suppress_fds():
                app = FaceAnalysis(
                    name=self.config.model_name,
                    providers=providers,
                    allowed_modules=["detection", "recognition"],
                )
            buf = io.StringIO()
            with redirect_stdout(buf), redirect_stderr(buf):
                app.prepare(ctx_id=self.ctx_id, det_size=self.det_size)

            _FACEAPP_CACHE[key] = app
            self._app = app
            logger.info(f"已加载 InsightFace 模型: {self.config.model_name} ({providers[0]})")
        except Exception as e:
            logger.error(f"模型初始化失败: {e}")
            raise

    def detect_existence(self, image: np.ndarray) -> bool:
        det_model = getattr(self._app, "det_model", None)
        if det_model is None:
            return self.detect_and_describe(image) is not None

        bboxes, _ = det_model.detect(image, max_num=0, metric="default")
        if bboxes is None or getattr(bboxes, "shape", (0,))[0] == 0:
            return False
        return bool(np.any(bboxes[:, 4] >= float(self.config.min_det_score)))

    def detect_and_describe(self, image: np.ndarray) -> Optional[DetectedFace]:
        faces = self._app.get(image) or []
        faces = [f for f in faces if float(getattr(f, "det_score", 0.0)) >= float(self.config.min_det_score)]
        if not faces:
            return None

        # 只取置信度最高的人脸
        best = max(faces, key=lambda f: float(getattr(f, "det_score", 0.0)))
        emb = getattr(best, "normed_embedding", None)
        if emb is None:
            emb = l2_normalize(np.asarray(best.embedding, dtype=np.float32))
        x1, y1, x2, y2 = [int(v) for v in np.asarray(best.bbox).reshape(-1)[:4]]
        return DetectedFace(
            bbox=(x1, y1, x2, y2),
            det_score=float(best.det_score),
            descriptor=np.asarray(emb, dtype=np.float32).reshape(-1),
        )


class DescriptorExtractor:
    """Awaitable facade over a FaceModelProvider."""

    def __init__(self, provider: FaceModelProvider):
        self.provider = provider

    async def has_face(self, image: np.ndarray) -> bool:
        return bool(await asyncio.to_thread(self.provider.detect_existence, image))

    async def describe(self, image: np.ndarray) -> Optional[DetectedFace]:
        return await asyncio.to_thread(self.provider.detect_and_describe, image)
