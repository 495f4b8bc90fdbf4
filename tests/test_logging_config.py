"""
日志配置单元测试：级别解析（参数、环境变量、缺省）与 logger 命名空间。
"""

from __future__ import annotations

import logging
from typing import Iterator

import pytest

from cachemover.logging_config import LOG_LEVEL_ENV, configure_logging, get_logger, resolve_level


@pytest.fixture(autouse=True)
def _restore_level() -> Iterator[None]:
    """测试结束后恢复 cachemover logger 的级别，避免影响其它测试。"""
    logger = get_logger()
    level = logger.level
    yield
    logger.setLevel(level)


@pytest.mark.parametrize(
    "value, expected",
    [("debug", logging.DEBUG), ("WARN", logging.WARNING), (" error ", logging.ERROR), (logging.CRITICAL, logging.CRITICAL)],
)
def test_resolve_level_names_and_numbers(value: str | int, expected: int) -> None:
    assert resolve_level(value) == expected


def test_resolve_level_unknown_name_falls_back_to_info() -> None:
    assert resolve_level("chatty") == logging.INFO
    assert resolve_level("") == logging.INFO


def test_resolve_level_reads_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    """未显式给出级别时读取 CACHEMOVER_LOG_LEVEL，未设置则为 INFO。"""
    monkeypatch.setenv(LOG_LEVEL_ENV, "debug")
    assert resolve_level() == logging.DEBUG
    assert resolve_level("error") == logging.ERROR

    monkeypatch.delenv(LOG_LEVEL_ENV)
    assert resolve_level() == logging.INFO


def test_configure_logging_sets_package_level_only() -> None:
    """级别设置在 cachemover logger 上，子模块继承，httpx 不受影响。"""
    httpx_level = logging.getLogger("httpx").level
    configure_logging("debug")

    assert get_logger().level == logging.DEBUG
    assert get_logger("cachemover.storage").getEffectiveLevel() == logging.DEBUG
    assert logging.getLogger("httpx").level == httpx_level
