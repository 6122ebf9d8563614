"""日志配置"""

import logging
import os
import sys

from contextlib import contextmanager

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
# httpx/httpcore 每个请求都会打一条 INFO，上传和参考照片下载时会刷屏
for _name in ("httpx", "httpcore"):
    logging.getLogger(_name).setLevel(logging.WARNING)


def get_logger(name):
    """获取日志记录器"""
    return logging.getLogger(name)


def set_verbose(verbose: bool) -> None:
    """Switch the facegate loggers between INFO and DEBUG (DEBUG adds candidate distances)."""
    logging.getLogger("facegate").setLevel(logging.DEBUG if verbose else logging.INFO)


@contextmanager
def suppress_fds():
    """Redirect FD 1 and 2 to /dev/null while loading native models.

    ONNX Runtime and InsightFace print from C code, which bypasses sys.stdout/sys.stderr.
    Python-level buffers are flushed first so pending log lines are not lost.
    """
    sys.stdout.flush()
    sys.stderr.flush()
    devnull = os.open(os.devnull, os.O_RDWR)
    saved = (os.dup(1), os.dup(2))
    try:
        os.dup2(devnull, 1)
        os.dup2(devnull, 2)
        yield
    finally:
        os.dup2(saved[0], 1)
        os.dup2(saved[1], 2)
        os.close(devnull)
        for fd in saved:
            os.close(fd)
