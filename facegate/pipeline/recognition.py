from __future__ import annotations

import logging
import time

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Tuple

from facegate.config import DEFAULT_UPLOAD_POLICY, UPLOAD_POLICIES
from facegate.face.descriptor import DescriptorExtractor, DetectedFace
from facegate.face.matcher import MatcherSlot, MatchResult
from facegate.sink.upload import GeoLocator, UploadResult, UploadSink
from facegate.utils.log import get_logger
from facegate.video.source import Frame, FrameSource

logger = get_logger(__name__)


class PipelineStage(str, Enum):
    IDLE = "idle"
    CAPTURING = "capturing"
    EXTRACTING = "extracting"
    MATCHING = "matching"
    SKIPPED_NO_MATCHER = "skipped_no_matcher"
    REPORTING = "reporting"


class OutcomeStatus(str, Enum):
    KNOWN = "known"
    UNKNOWN = "unknown"
    NO_FACE = "no_face"
    NO_MATCHER = "no_matcher"
    NO_FRAME = "no_frame"
    FAILED = "failed"


@dataclass
class PipelineConfig:
    # never / always / on_face / on_unknown
    upload_policy: str = DEFAULT_UPLOAD_POLICY

    def __post_init__(self) -> None:
        if self.upload_policy not in UPLOAD_POLICIES:
            raise ValueError(f"upload_policy must be one of {UPLOAD_POLICIES}, got {self.upload_policy!r}")


@dataclass
class RecognitionOutcome:
    status: OutcomeStatus
    started_at: float
    finished_at: float = 0.0
    captured_at: Optional[float] = None
    face: Optional[DetectedFace] = None
    match: Optional[MatchResult] = None
    upload: Optional[UploadResult] = None
    location: Optional[Tuple[float, float]] = None
    error: Optional[str] = None
    notices: List[str] = field(default_factory=list)

    @property
    def identity_id(self) -> Optional[str]:
        return self.match.identity_id if self.match is not None else None

    @property
    def distance(self) -> Optional[float]:
        return self.match.distance if self.match is not None else None


class RecognitionPipeline:
    """One capture → extract → match → report cycle per `run()` call.

    `run()` never raises: provider/capture faults end as a FAILED outcome, upload
    failures become notices. Serialization of concurrent runs is the caller's job
    (see CaptureScheduler and its ProcessingLock).
    """

    def __init__(
        self,
        source: FrameSource,
        extractor: DescriptorExtractor,
        matchers: MatcherSlot,
        *,
        config: Optional[PipelineConfig] = None,
        upload_sink: Optional[UploadSink] = None,
        locator: Optional[GeoLocator] = None,
        on_outcome: Optional[Callable[[RecognitionOutcome], None]] = None,
    ):
        self.source = source
        self.extractor = extractor
        self.matchers = matchers
        self.config = config or PipelineConfig()
        self.upload_sink = upload_sink
        self.locator = locator
        self.on_outcome = on_outcome
        self.stage = PipelineStage.IDLE

    def _should_upload(self, status: OutcomeStatus) -> bool:
        if self.upload_sink is None:
            return False
        policy = self.config.upload_policy
        if policy == "always":
            return True
        if policy == "on_face":
            return status in (OutcomeStatus.KNOWN, OutcomeStatus.UNKNOWN, OutcomeStatus.NO_MATCHER)
        if policy == "on_unknown":
            return status == OutcomeStatus.UNKNOWN
        return False

    async def _locate(self) -> Optional[Tuple[float, float]]:
        if self.locator is None:
            return None
        try:
            return await self.locator.locate()
        except Exception as e:
            # 定位失败时仍然上传，只是不带坐标
            logger.warning(f"获取位置失败，按无坐标上传: {e}")
            return None

    async def _upload(self, frame: Frame, outcome: RecognitionOutcome) -> None:
        outcome.location = await self._locate()
        lat, lon = outcome.location if outcome.location is not None else (None, None)
        try:
            result = await self.upload_sink.submit(frame.image, lat, lon)
        except Exception as e:
            logger.error(f"上传异常: {e}")
            result = UploadResult(ok=False, error=str(e))
        outcome.upload = result
        if not result.ok:
            outcome.notices.append(f"upload failed: {result.error}")

    async def _classify(self, frame: Frame, outcome: RecognitionOutcome) -> None:
        self.stage = PipelineStage.EXTRACTING
        face = await self.extractor.describe(frame.image)
        if face is None:
            outcome.status = OutcomeStatus.NO_FACE
            return
        outcome.face = face

        # 读取一次当前匹配器；重建索引只会整体替换，不影响本次识别
        matcher = self.matchers.current
        if matcher is None:
            self.stage = PipelineStage.SKIPPED_NO_MATCHER
            outcome.status = OutcomeStatus.NO_MATCHER
            return

        self.stage = PipelineStage.MATCHING
        outcome.match = matcher.match(face.descriptor)
        outcome.status = OutcomeStatus.KNOWN if outcome.match.accepted else OutcomeStatus.UNKNOWN
        if not outcome.match.accepted and logger.isEnabledFor(logging.DEBUG):
            # 便于调阈值：输出最接近的几个身份
            logger.debug(f"最接近的候选: {matcher.top_k(face.descriptor, k=3)}")

    def _report(self, outcome: RecognitionOutcome) -> None:
        status = outcome.status
        if status == OutcomeStatus.KNOWN:
            logger.info(f"识别成功: {outcome.identity_id} (距离: {outcome.distance:.4f})")
        elif status == OutcomeStatus.UNKNOWN:
            logger.info(f"未知人员 (最小距离: {outcome.distance:.4f})")
        elif status == OutcomeStatus.NO_FACE:
            logger.info("no face detected in captured frame")
        elif status == OutcomeStatus.NO_MATCHER:
            logger.info("匹配器尚未就绪，仅记录原始抓拍")
        elif status == OutcomeStatus.NO_FRAME:
            logger.warning("视频源未返回图像")
        else:
            logger.error(f"识别失败: {outcome.error}")

        for notice in outcome.notices:
            logger.warning(notice)

        if self.on_outcome is not None:
            try:
                self.on_outcome(outcome)
            except Exception as e:
                logger.error(f"结果回调失败: {e}")

    async def run(self) -> RecognitionOutcome:
        outcome = RecognitionOutcome(status=OutcomeStatus.FAILED, started_at=time.time())
        try:
            self.stage = PipelineStage.CAPTURING
            frame = await self.source.grab()
            if frame is None:
                outcome.status = OutcomeStatus.NO_FRAME
            else:
                outcome.captured_at = frame.captured_at
                await self._classify(frame, outcome)

                if self._should_upload(outcome.status):
                    await self._upload(frame, outcome)

            self.stage = PipelineStage.REPORTING
            outcome.finished_at = time.time()
            self._report(outcome)
        except Exception as e:
            logger.exception(f"识别流程异常: {e}")
            outcome.status = OutcomeStatus.FAILED
            outcome.error = str(e) or type(e).__name__
            outcome.finished_at = time.time()
            self._report(outcome)
        finally:
            self.stage = PipelineStage.IDLE
        return outcome
