"""
归档格式选择：tar 流外层的压缩包装（gzip / zstd）。

压缩只是透传的流变换，归档引擎本身只看到普通的字节流。
解压失败被转换为 OSError，由引擎统一报告为 ArchiveNotReadableError。
"""

from __future__ import annotations

import gzip
import zlib
from typing import Any, BinaryIO

import zstandard as zstd

from cachemover.errors import ArchiveError, ConfigError
from cachemover.models import ArchiveOptions, ExtractReport
from cachemover.tar_archive import TarArchive

TAR = "tar"
GZIP = "gzip"
ZSTD = "zstd"
FORMATS = (TAR, GZIP, ZSTD)

DEFAULT_LEVEL = {GZIP: 6, ZSTD: 3}

# 归档文件扩展名，供 CLI 生成默认文件名
EXTENSIONS = {TAR: ".tar", GZIP: ".tar.gz", ZSTD: ".tar.zst"}


class _DecompressingReader:
    """包装解压读取器：把解压库自己的异常转换为 OSError。"""

    def __init__(self, raw: Any, errors: tuple[type[BaseException], ...]):
        self._raw = raw
        self._errors = errors

    def read(self, size: int = -1) -> bytes:
        try:
            return self._raw.read(size)
        except self._errors as e:
            raise OSError(f"decompress archive: {e}") from e

    def close(self) -> None:
        self._raw.close()


class CompressedArchive:
    """在 TarArchive 外层加压缩；create/extract 接口与 TarArchive 一致。"""

    def __init__(self, archive: TarArchive, fmt: str = TAR, level: int | None = None):
        if fmt not in FORMATS:
            raise ConfigError(f"unknown archive format: {fmt!r} (expected one of {', '.join(FORMATS)})")
        self.archive = archive
        self.fmt = fmt
        self.level = level if level is not None else DEFAULT_LEVEL.get(fmt)

    @property
    def options(self) -> ArchiveOptions:
        return self.archive.options

    def _compressor(self, fileobj: BinaryIO) -> Any:
        if self.fmt == GZIP:
            return gzip.GzipFile(fileobj=fileobj, mode="wb", compresslevel=self.level, mtime=0)
        return zstd.ZstdCompressor(level=self.level).stream_writer(fileobj, closefd=False)

    def _decompressor(self, fileobj: BinaryIO) -> _DecompressingReader:
        if self.fmt == GZIP:
            return _DecompressingReader(gzip.GzipFile(fileobj=fileobj, mode="rb"), (zlib.error,))
        return _DecompressingReader(
            zstd.ZstdDecompressor().stream_reader(fileobj, closefd=False), (zstd.ZstdError,)
        )

    def create(self, srcs: list[str], fileobj: BinaryIO, is_relative_path: bool = False) -> int:
        if self.fmt == TAR:
            return self.archive.create(srcs, fileobj, is_relative_path)

        writer = self._compressor(fileobj)
        written = 0
        try:
            written = self.archive.create(srcs, writer, is_relative_path)
        finally:
            try:
                writer.close()
            except (OSError, zstd.ZstdError) as e:
                raise ArchiveError(f"close {self.fmt} writer: {e}", written) from e
        return written

    def extract(self, dst: str, fileobj: BinaryIO) -> int:
        return self.extract_with_report(dst, fileobj).written

    def extract_with_report(self, dst: str, fileobj: BinaryIO) -> ExtractReport:
        if self.fmt == TAR:
            return self.archive.extract_with_report(dst, fileobj)

        reader = self._decompressor(fileobj)
        try:
            return self.archive.extract_with_report(dst, reader)
        finally:
            reader.close()


def from_format(
    root: str,
    fmt: str = TAR,
    *,
    skip_symlinks: bool = False,
    preserve_metadata: bool = False,
    absolute_names: bool = False,
    level: int | None = None,
) -> CompressedArchive:
    """
    按格式名创建归档。

    :param root: 归档根目录
    :param fmt: "tar"、"gzip" 或 "zstd"
    :param skip_symlinks: 是否跳过符号链接
    :param preserve_metadata: 是否保留元数据
    :param absolute_names: 绝对源路径是否保留绝对名
    :param level: 压缩级别，默认 gzip 6 / zstd 3
    """
    archive = TarArchive(
        root,
        skip_symlinks=skip_symlinks,
        preserve_metadata=preserve_metadata,
        absolute_names=absolute_names,
    )
    return CompressedArchive(archive, fmt, level)
