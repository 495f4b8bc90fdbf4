"""
cachemover 数据模型。

- ArchiveOptions：归档引擎构造时固定的配置（根目录、是否跳过符号链接、是否保留元数据）。
- DirMetadata：解包期间延后应用的目录元数据，按目标绝对路径登记，由单次 extract 独占。
- MetadataAdvisory / ExtractReport：把「内容结果」与「元数据建议性结果」分开。
- FileEntry：存储后端 list 返回的对象条目；DirEntry 为 HFS 列表接口的原始条目。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass(frozen=True)
class ArchiveOptions:
    """
    :param root: 归档根目录，create 时据此计算条目相对名
    :param skip_symlinks: True 时遍历到的符号链接不写入归档
    :param preserve_metadata: True 时使用 PAX 格式并记录/还原权限、属主与时间
    :param absolute_names: True 时绝对源路径保留绝对名，解包时绝对条目原样还原到该路径
    """

    root: str
    skip_symlinks: bool = False
    preserve_metadata: bool = False
    absolute_names: bool = False


@dataclass(frozen=True)
class DirMetadata:
    """目录的待应用元数据；时间单位为纳秒。"""

    mode: int
    atime_ns: int
    mtime_ns: int
    uid: int
    gid: int


@dataclass(frozen=True)
class MetadataAdvisory:
    """一次被吞掉的元数据系统调用失败（如非 root 用户 chown）。"""

    path: str
    operation: str
    error: OSError

    def __str__(self) -> str:
        return f"{self.operation} <{self.path}>: {self.error}"


@dataclass
class ExtractReport:
    """extract 的结果：written 为写入的 payload 字节数，advisories 为元数据失败记录。"""

    written: int = 0
    advisories: list[MetadataAdvisory] = field(default_factory=list)


@dataclass(frozen=True)
class FileEntry:
    """存储后端中的一个对象。"""

    path: str
    size: int
    last_modified: datetime | None = None


# DirEntry：HFS get_file_list 返回的 list 中每一项
# n=名称（文件夹以 / 结尾）, c=创建时间, m=修改时间, s=大小(字节)
DirEntry = dict[str, Any]


def entry_name(entry: DirEntry) -> str:
    """条目名称，文件夹去掉末尾 /。"""
    return (entry.get("n") or "").rstrip("/")


def entry_is_folder(entry: DirEntry) -> bool:
    return (entry.get("n") or "").endswith("/")


def entry_size(entry: DirEntry) -> int:
    """条目大小（字节），文件夹可为 0 或未提供。"""
    return int(entry.get("s") or 0)


def entry_modified(entry: DirEntry) -> datetime | None:
    """条目修改时间；缺失或无法解析时为 None。"""
    value = entry.get("m")
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
