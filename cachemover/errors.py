"""
cachemover 异常类型。

归档错误（ArchiveError 及其子类）携带 written：出错前已写入的 payload 字节数，
调用方据此报告部分进度；出现任何异常都不应信任生成的归档或还原出的目录树。
元数据（chmod/utime/chown）失败不属于异常，见 models.MetadataAdvisory。
"""

from __future__ import annotations


class CacheMoverError(Exception):
    """cachemover 所有错误的基类。"""
    pass


class ConfigError(CacheMoverError):
    """配置或参数无效（未知的压缩格式、后端类型等）。"""
    pass


# ------------------------- 归档 -------------------------


class ArchiveError(CacheMoverError):
    """归档创建/解包失败。"""

    def __init__(self, message: str, written: int = 0):
        super().__init__(message)
        self.written = written


class SourceNotReachableError(ArchiveError):
    """create 的某个源路径无法 stat（不存在或无权限）。"""
    pass


class ArchiveNotReadableError(ArchiveError):
    """解包时输入流损坏、被截断或无法解压。"""
    pass


class UnsupportedEntryTypeError(ArchiveError):
    """归档条目的类型标志不在支持范围内。"""

    def __init__(self, path: str, typeflag: bytes, written: int = 0):
        super().__init__(f"extract {path}, unknown type flag: {typeflag!r}", written)
        self.path = path
        self.typeflag = typeflag


class PathResolutionError(ArchiveError):
    """无法计算归档内相对名（如跨盘符）。"""
    pass


# ------------------------- 存储 -------------------------


class StorageError(CacheMoverError):
    """存储后端操作失败。"""
    pass


class ObjectNotFoundError(StorageError):
    """请求的 key 在存储后端不存在。"""
    pass


class StorageCancelledError(StorageError):
    """操作在完成前被取消或超过截止时间。"""
    pass
