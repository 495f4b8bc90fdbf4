"""
日志：CLI 入口调用一次 configure_logging，各模块用 get_logger(__name__) 取 logger。

级别只设置在 cachemover 命名空间上，httpx 等第三方库仍按根 logger 的默认级别（WARNING）输出。
"""

from __future__ import annotations

import logging
import os

LOGGER_NAME = "cachemover"
LOG_LEVEL_ENV = "CACHEMOVER_LOG_LEVEL"
LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
LOG_DATEFMT = "%H:%M:%S"


def resolve_level(level: str | int | None = None) -> int:
    """
    把 --log-level 或环境变量中的取值换成 logging 级别。

    :param level: 级别名（不区分大小写，如 "debug"、"WARN"）或数值；None 时读取环境变量 CACHEMOVER_LOG_LEVEL
    :return: logging 级别；未设置或无法识别时为 INFO
    """
    if level is None:
        level = os.environ.get(LOG_LEVEL_ENV, "")
    if isinstance(level, int):
        return level
    value = logging.getLevelName(level.strip().upper())
    return value if isinstance(value, int) else logging.INFO


def configure_logging(level: str | int | None = None) -> None:
    """根 logger 还没有 handler 时挂一个 stderr handler，再设置 cachemover logger 的级别。"""
    logging.basicConfig(format=LOG_FORMAT, datefmt=LOG_DATEFMT)
    get_logger().setLevel(resolve_level(level))


def get_logger(name: str | None = None) -> logging.Logger:
    return logging.getLogger(name or LOGGER_NAME)
