from __future__ import annotations

import asyncio

from dataclasses import dataclass
from typing import Optional, Set

from facegate.config import DETECT_INTERVAL_SECONDS
from facegate.face.descriptor import DescriptorExtractor
from facegate.pipeline.lock import ProcessingLock
from facegate.pipeline.recognition import RecognitionPipeline
from facegate.utils.log import get_logger
from facegate.video.source import FrameSource

logger = get_logger(__name__)


@dataclass
class SchedulerConfig:
    interval: float = DETECT_INTERVAL_SECONDS
    # False: every tick triggers a capture without the existence check.
    detect_first: bool = True

    def __post_init__(self) -> None:
        if float(self.interval) <= 0:
            raise ValueError(f"interval must be > 0, got {self.interval}")


class CaptureScheduler:
    """Fixed-period timer that drives recognition attempts.

    Every tick runs as its own task so a slow recognition never delays the timer.
    A tick that finds the ProcessingLock held (or another tick still checking for a
    face) is dropped, not queued. `stop()` only cancels the timer: a recognition
    already holding the lock runs to completion and then releases it.
    """

    def __init__(
        self,
        source: FrameSource,
        extractor: DescriptorExtractor,
        pipeline: RecognitionPipeline,
        config: Optional[SchedulerConfig] = None,
        lock: Optional[ProcessingLock] = None,
    ):
        self.source = source
        self.extractor = extractor
        self.pipeline = pipeline
        self.config = config or SchedulerConfig()
        self.lock = lock or ProcessingLock()

        self._timer: Optional[asyncio.Task] = None
        self._inflight: Set[asyncio.Task] = set()
        self._checking = False
        # Bumped by stop(); ticks started under an older generation do not begin recognition.
        self._generation = 0

        self.ticks = 0
        self.skipped = 0
        self.attempts = 0

    @property
    def running(self) -> bool:
        return self._timer is not None and not self._timer.done()

    def start(self) -> None:
        if self.running:
            return
        loop = asyncio.get_running_loop()
        self._timer = loop.create_task(self._run_timer(), name="capture-timer")
        mode = "检测后抓拍" if self.config.detect_first else "定时抓拍"
        logger.info(f"抓拍调度已启动: 间隔 {float(self.config.interval):.1f}s ({mode})")

    def stop(self) -> None:
        self._generation += 1
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
            logger.info("抓拍调度已停止")

    async def wait_idle(self) -> None:
        """Wait for ticks already fired (including an in-flight recognition) to finish."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    async def aclose(self) -> None:
        self.stop()
        await self.wait_idle()

    async def _run_timer(self) -> None:
        loop = asyncio.get_running_loop()
        interval = float(self.config.interval)
        next_at = loop.time() + interval
        while True:
            await asyncio.sleep(max(0.0, next_at - loop.time()))
            task = loop.create_task(self.tick())
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)

            next_at += interval
            now = loop.time()
            if next_at < now:
                # 落后时直接丢弃错过的 tick，不补发
                next_at = now + interval

    async def _face_present(self) -> bool:
        frame = await self.source.grab()
        if frame is None:
            return False
        return await self.extractor.has_face(frame.image)

    async def tick(self) -> bool:
        """Run one scheduled attempt. Returns True when a recognition ran."""
        self.ticks += 1
        if self.lock.held or self._checking:
            self.skipped += 1
            logger.debug("上一次识别尚未结束，跳过本次 tick")
            return False

        generation = self._generation
        try:
            if self.config.detect_first:
                self._checking = True
                try:
                    found = await self._face_present()
                finally:
                    self._checking = False
                if not found:
                    return False

            if generation != self._generation or self.lock.held:
                self.skipped += 1
                return False

            with self.lock.hold():
                self.attempts += 1
                await self.pipeline.run()
            return True
        except Exception as e:
            logger.exception(f"tick 处理失败: {e}")
            return False
