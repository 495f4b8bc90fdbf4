"""
缓存编排：把路径打包上传为 key（rebuild），或按 key 下载并解包（restore）。

归档先落到临时文件再上传/解包，归档引擎与存储后端之间只传递字节流。
"""

from __future__ import annotations

import tempfile
import threading
from contextlib import contextmanager
from typing import IO, Iterator

from cachemover.compression import CompressedArchive
from cachemover.errors import ObjectNotFoundError, StorageCancelledError
from cachemover.logging_config import get_logger
from cachemover.models import ExtractReport
from cachemover.storage import Backend

# 小于该大小的归档留在内存中
SPOOL_MAX_SIZE = 8 * 1024 * 1024


@contextmanager
def _spool() -> Iterator[IO[bytes]]:
    """
    归档暂存文件。

    存储操作被取消或超时时不关闭：被放弃的后台线程可能仍持有它，
    等该线程退出、引用释放后由垃圾回收关闭。
    """
    spool = tempfile.SpooledTemporaryFile(max_size=SPOOL_MAX_SIZE)
    try:
        yield spool
    except StorageCancelledError:
        raise
    except BaseException:
        spool.close()
        raise
    spool.close()


class Cache:
    """
    :param archive: 归档（含压缩格式与元数据选项）
    :param backend: 存储后端
    :param timeout: 每次存储操作的超时秒数，None 表示不限
    """

    def __init__(self, archive: CompressedArchive, backend: Backend, *, timeout: float | None = None):
        self.archive = archive
        self.backend = backend
        self.timeout = timeout
        self._log = get_logger(__name__)

    def rebuild(
        self,
        srcs: list[str],
        key: str,
        *,
        override: bool = True,
        is_relative_path: bool = False,
        cancel: threading.Event | None = None,
    ) -> int:
        """
        打包 srcs 并上传为 key。

        :param override: False 时若 key 已存在则跳过
        :return: 归档中的 payload 字节数（跳过时为 0）
        """
        if not override and self.backend.exists(key, cancel=cancel, timeout=self.timeout):
            self._log.info("Cache <%s> already exists, skipping rebuild", key)
            return 0

        self._log.info("Rebuilding cache <%s> from %d path(s)", key, len(srcs))
        with _spool() as spool:
            written = self.archive.create(srcs, spool, is_relative_path)
            size = spool.tell()
            spool.seek(0)
            self.backend.put(key, spool, cancel=cancel, timeout=self.timeout)

        self._log.info("Uploaded cache <%s>: %d payload bytes, %d archive bytes", key, written, size)
        return written

    def restore(self, dst: str, key: str, *, cancel: threading.Event | None = None) -> ExtractReport:
        """
        下载 key 并解包到 dst。

        :raises ObjectNotFoundError: key 不存在
        """
        self._log.info("Restoring cache <%s> into %s", key, dst)
        with _spool() as spool:
            try:
                self.backend.get(key, spool, cancel=cancel, timeout=self.timeout)
            except ObjectNotFoundError:
                self._log.warning("Cache <%s> not found", key)
                raise
            spool.seek(0)
            report = self.archive.extract_with_report(dst, spool)

        if report.advisories:
            self._log.info("Restored cache <%s> with %d metadata warning(s)", key, len(report.advisories))
        self._log.info("Restored cache <%s>: %d bytes", key, report.written)
        return report
