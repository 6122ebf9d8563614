"""命令行入口：定时抓拍视频帧，检测到人脸后与参考人脸比对，并可上传抓拍图像。

实现位于 `facegate/` 包内；此文件仅负责参数解析与组装。
"""

from __future__ import annotations

import argparse
import asyncio
import signal
import time

from typing import List, Optional

from facegate.app import CaptureRecognizer, ReferenceCacheConfig
from facegate.config import (
    CAPTURE_INTERVAL_SECONDS,
    DEFAULT_MATCH_THRESHOLD,
    DEFAULT_UPLOAD_POLICY,
    DETECT_INTERVAL_SECONDS,
    INSIGHTFACE_DET_SIZE,
    STRICT_MATCH_THRESHOLD,
    UPLOAD_POLICIES,
)
from facegate.face.descriptor import DescriptorExtractor, InsightFaceConfig, InsightFaceProvider
from facegate.face.matcher import MatcherConfig, MatcherSlot
from facegate.face.reference import ReferenceIndexBuilder
from facegate.pipeline.recognition import PipelineConfig, RecognitionPipeline
from facegate.pipeline.scheduler import CaptureScheduler, SchedulerConfig
from facegate.sink.upload import StaticGeoLocator, UploadConfig, UploadSink
from facegate.store.references import DirectoryReferenceStore, HttpReferenceStore
from facegate.utils.log import get_logger, set_verbose
from facegate.utils.serializer import JsonLinesReporter
from facegate.video.source import CameraFrameSource

logger = get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="实时抓拍人脸识别：按固定间隔检测人脸并与参考人脸比对")
    parser.add_argument("--source", "-s", default="0", help="视频源：摄像头编号、流地址或视频文件（默认 0）")

    refs = parser.add_mutually_exclusive_group(required=True)
    refs.add_argument("--reference-url", help="参考照片列表接口（返回含 id/image_url 的 JSON）")
    refs.add_argument("--gallery", "-g", help="本地图库路径：每个身份一个子目录")

    parser.add_argument("--cache-dir", default=None, help="参考人脸特征缓存目录（不指定则不缓存）")
    parser.add_argument("--rebuild-gallery", action="store_true", help="忽略缓存，强制重建参考索引")
    parser.add_argument(
        "--rebuild-interval", type=float, default=None, help="定时重建参考索引的间隔（秒），默认不重建"
    )
    parser.add_argument(
        "--threshold",
        "-t",
        type=float,
        default=None,
        help=f"欧氏距离匹配阈值，越小越严格（默认 {DEFAULT_MATCH_THRESHOLD}）",
    )
    parser.add_argument(
        "--strict", action="store_true", help=f"使用更严格的匹配阈值 {STRICT_MATCH_THRESHOLD}（-t 优先）"
    )
    parser.add_argument("--interval", "-i", type=float, default=None, help="抓拍间隔（秒）")
    parser.add_argument(
        "--simple-capture",
        action="store_true",
        help=f"定时抓拍模式：不做人脸存在检测，默认间隔 {CAPTURE_INTERVAL_SECONDS}s",
    )
    parser.add_argument("--upload-url", default=None, help="抓拍上传接口地址（不指定则不上传）")
    parser.add_argument(
        "--upload-policy",
        choices=list(UPLOAD_POLICIES),
        default=DEFAULT_UPLOAD_POLICY,
        help="上传策略：never/always/on_face/on_unknown",
    )
    parser.add_argument("--latitude", type=float, default=None, help="抓拍位置纬度（需与经度同时指定）")
    parser.add_argument("--longitude", type=float, default=None, help="抓拍位置经度")
    parser.add_argument("--det-size", type=int, default=INSIGHTFACE_DET_SIZE, help="InsightFace det_size（默认 640）")
    parser.add_argument(
        "--device",
        type=str,
        default="auto",
        choices=["auto", "cpu", "gpu"],
        help="计算设备：auto/cpu/gpu（默认 auto：有 CUDA 就用 GPU）",
    )
    parser.add_argument("--output-jsonl", default=None, help="识别结果逐行写入的 JSONL 文件")
    parser.add_argument("--max-seconds", type=float, default=None, help="最多运行多少秒（用于调试）")
    parser.add_argument("--verbose", "-v", action="store_true", help="输出调试日志（含最接近候选的距离）")
    return parser


def build_app(args: argparse.Namespace) -> CaptureRecognizer:
    if args.interval is not None:
        interval = float(args.interval)
    else:
        interval = CAPTURE_INTERVAL_SECONDS if args.simple_capture else DETECT_INTERVAL_SECONDS
    if args.threshold is not None:
        threshold = float(args.threshold)
    else:
        threshold = STRICT_MATCH_THRESHOLD if args.strict else DEFAULT_MATCH_THRESHOLD

    source = CameraFrameSource(args.source)
    provider = InsightFaceProvider(InsightFaceConfig(det_size=int(args.det_size), device=str(args.device)))
    extractor = DescriptorExtractor(provider)
    matchers = MatcherSlot(MatcherConfig(threshold=threshold, device=str(args.device)))

    if args.reference_url:
        reference_store = HttpReferenceStore(args.reference_url)
    else:
        reference_store = DirectoryReferenceStore(args.gallery)

    upload_sink = UploadSink(UploadConfig(url=args.upload_url)) if args.upload_url else None
    locator = StaticGeoLocator(args.latitude, args.longitude)
    reporter = JsonLinesReporter(args.output_jsonl) if args.output_jsonl else None

    pipeline = RecognitionPipeline(
        source,
        extractor,
        matchers,
        config=PipelineConfig(upload_policy=str(args.upload_policy)),
        upload_sink=upload_sink,
        locator=locator,
        on_outcome=reporter,
    )
    scheduler = CaptureScheduler(
        source,
        extractor,
        pipeline,
        SchedulerConfig(interval=interval, detect_first=not args.simple_capture),
    )
    return CaptureRecognizer(
        source,
        extractor,
        reference_store,
        matchers,
        pipeline,
        scheduler,
        builder=ReferenceIndexBuilder(extractor),
        cache_config=ReferenceCacheConfig(cache_dir=args.cache_dir, rebuild=bool(args.rebuild_gallery)),
        rebuild_interval=args.rebuild_interval,
    )


async def _run(app: CaptureRecognizer, max_seconds: Optional[float]) -> None:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            # Windows 事件循环不支持信号处理，Ctrl+C 走 KeyboardInterrupt
            pass
    await app.run(stop_event=stop_event, max_seconds=max_seconds)


def main(argv: Optional[List[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    set_verbose(args.verbose)
    app = build_app(args)
    try:
        asyncio.run(_run(app, args.max_seconds))
    except KeyboardInterrupt:
        logger.info("已中断")


if __name__ == "__main__":
    st = time.time()
    main()
    ed = time.time()
    logger.info(f"总耗时: {ed - st:.2f} 秒")
