from __future__ import annotations

import asyncio

from dataclasses import dataclass
from typing import Optional

from facegate.face.descriptor import DescriptorExtractor
from facegate.face.gallery import ReferenceSet
from facegate.face.matcher import MatcherSlot
from facegate.face.reference import ReferenceIndexBuilder
from facegate.pipeline.recognition import RecognitionPipeline
from facegate.pipeline.scheduler import CaptureScheduler
from facegate.store.references import ReferenceStore
from facegate.utils.log import get_logger
from facegate.video.source import FrameSource

logger = get_logger(__name__)


@dataclass
class ReferenceCacheConfig:
    # Directory holding the cached reference descriptors; None disables caching.
    cache_dir: Optional[str] = None
    # Ignore an existing cache and rebuild from the reference store.
    rebuild: bool = False


class CaptureRecognizer:
    """Wires reference indexing, the matcher slot and the capture scheduler together.

    The first index build runs concurrently with the scheduler: ticks that fire
    before it finishes simply report that no matcher is available yet.
    """

    def __init__(
        self,
        source: FrameSource,
        extractor: DescriptorExtractor,
        reference_store: ReferenceStore,
        matchers: MatcherSlot,
        pipeline: RecognitionPipeline,
        scheduler: CaptureScheduler,
        *,
        builder: Optional[ReferenceIndexBuilder] = None,
        cache_config: Optional[ReferenceCacheConfig] = None,
        rebuild_interval: Optional[float] = None,
    ):
        self.source = source
        self.extractor = extractor
        self.reference_store = reference_store
        self.matchers = matchers
        self.pipeline = pipeline
        self.scheduler = scheduler
        self.builder = builder or ReferenceIndexBuilder(extractor)
        self.cache_config = cache_config or ReferenceCacheConfig()
        self.rebuild_interval = float(rebuild_interval) if rebuild_interval else None
        self._refreshing = False

    async def refresh_references(self) -> bool:
        """Rebuild the reference index from the store and swap in a new matcher.

        Returns True when the new set has at least one descriptor. If the listing
        itself fails the current matcher is kept. An empty set also drops the
        on-disk cache, so a restart cannot bring back identities the store no
        longer lists.
        """
        self._refreshing = True
        try:
            return await self._refresh()
        finally:
            self._refreshing = False

    async def _refresh(self) -> bool:
        try:
            entries = await self.reference_store.list_references()
        except Exception as e:
            logger.error(f"获取参考照片列表失败，保留当前索引: {e}")
            return False

        reference_set = await self.builder.build(entries)
        self.matchers.replace(reference_set)

        cache_dir = self.cache_config.cache_dir
        if not cache_dir:
            return bool(reference_set)
        try:
            if reference_set:
                fp = await asyncio.to_thread(reference_set.save, cache_dir)
                logger.info(f"参考索引已缓存: {fp}")
            elif await asyncio.to_thread(ReferenceSet.remove_cache, cache_dir):
                logger.info("参考索引为空，已删除旧缓存")
        except Exception as e:
            logger.warning(f"参考索引缓存更新失败: {e}")
        return bool(reference_set)

    async def load_or_build_references(self) -> bool:
        """加载缓存的参考索引，不存在或要求重建时重新构建"""
        self._refreshing = True
        try:
            return await self._load_or_build()
        finally:
            self._refreshing = False

    async def _load_or_build(self) -> bool:
        cache_dir = self.cache_config.cache_dir
        if cache_dir and not self.cache_config.rebuild:
            try:
                cached = await asyncio.to_thread(ReferenceSet.load, cache_dir)
            except Exception as e:
                logger.warning(f"读取参考索引缓存失败: {e}")
                cached = None
            if cached:
                self.matchers.replace(cached)
                logger.info(f"已加载参考索引缓存: {len(cached)} 个身份")
                return True

        return await self._refresh()

    async def _rebuild_periodically(self) -> None:
        while True:
            await asyncio.sleep(self.rebuild_interval)
            if self._refreshing:
                logger.info("上一次参考索引构建尚未完成，跳过本次定时重建")
                continue
            logger.info("定时重建参考索引")
            await self.refresh_references()

    async def run(self, stop_event: Optional[asyncio.Event] = None, max_seconds: Optional[float] = None) -> None:
        stop_event = stop_event or asyncio.Event()
        background = [asyncio.create_task(self.load_or_build_references(), name="reference-index")]
        if self.rebuild_interval:
            background.append(asyncio.create_task(self._rebuild_periodically(), name="reference-rebuild"))

        self.scheduler.start()
        try:
            if max_seconds is not None:
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=float(max_seconds))
                except asyncio.TimeoutError:
                    logger.info(f"已达到最长运行时间 {float(max_seconds):.1f}s")
            else:
                await stop_event.wait()
        finally:
            self.scheduler.stop()
            for task in background:
                task.cancel()
            await asyncio.gather(*background, return_exceptions=True)
            await self.scheduler.wait_idle()
            self.source.close()
            logger.info(
                f"运行结束: ticks={self.scheduler.ticks}, 识别次数={self.scheduler.attempts}, "
                f"跳过={self.scheduler.skipped}"
            )
