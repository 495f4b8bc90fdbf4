"""cachemover - 构建产物缓存搬运：把路径打成 tar 归档存入对象存储，之后按 key 还原（可保留 POSIX 元数据）。"""

from cachemover.cache import Cache
from cachemover.client import HFSClient
from cachemover.compression import CompressedArchive, from_format
from cachemover.errors import (
    ArchiveError,
    ArchiveNotReadableError,
    CacheMoverError,
    ObjectNotFoundError,
    PathResolutionError,
    SourceNotReachableError,
    StorageCancelledError,
    StorageError,
    UnsupportedEntryTypeError,
)
from cachemover.models import ArchiveOptions, ExtractReport, FileEntry, MetadataAdvisory
from cachemover.storage import Backend, FilesystemBackend, HFSBackend
from cachemover.tar_archive import TarArchive, relative

__all__ = [
    "TarArchive",
    "CompressedArchive",
    "from_format",
    "relative",
    "Cache",
    "Backend",
    "FilesystemBackend",
    "HFSBackend",
    "HFSClient",
    "ArchiveOptions",
    "ExtractReport",
    "FileEntry",
    "MetadataAdvisory",
    "CacheMoverError",
    "ArchiveError",
    "ArchiveNotReadableError",
    "SourceNotReachableError",
    "UnsupportedEntryTypeError",
    "PathResolutionError",
    "StorageError",
    "StorageCancelledError",
    "ObjectNotFoundError",
]
