"""
平台相关的文件元数据访问。

POSIX 平台从 os.stat_result 读取纳秒级 atime/ctime 与数字 uid/gid，并支持 chown；
其它平台（如 Windows，无 POSIX 属主模型）返回 ok=False、零时间与 0/0 属主，且不做 chown。
调用方只使用模块属性 accessor，不自行判断平台。
"""

from __future__ import annotations

import os


class MetadataAccessor:
    """元数据能力接口。"""

    supports_ownership = False

    def extract_times(self, st: os.stat_result) -> tuple[int, int, bool]:
        """返回 (atime_ns, ctime_ns, ok)；ok=False 时调用方应以 mtime 代替两者。"""
        raise NotImplementedError

    def extract_owner(self, st: os.stat_result) -> tuple[int, int]:
        """返回 (uid, gid)。"""
        raise NotImplementedError

    def chown(self, path: str, uid: int, gid: int, *, follow_symlinks: bool = True) -> None:
        raise NotImplementedError


class PosixMetadata(MetadataAccessor):
    supports_ownership = True

    def extract_times(self, st: os.stat_result) -> tuple[int, int, bool]:
        return st.st_atime_ns, st.st_ctime_ns, True

    def extract_owner(self, st: os.stat_result) -> tuple[int, int]:
        return st.st_uid, st.st_gid

    def chown(self, path: str, uid: int, gid: int, *, follow_symlinks: bool = True) -> None:
        os.chown(path, uid, gid, follow_symlinks=follow_symlinks)


class NullMetadata(MetadataAccessor):
    supports_ownership = False

    def extract_times(self, st: os.stat_result) -> tuple[int, int, bool]:
        return 0, 0, False

    def extract_owner(self, st: os.stat_result) -> tuple[int, int]:
        return 0, 0

    def chown(self, path: str, uid: int, gid: int, *, follow_symlinks: bool = True) -> None:
        # 无 POSIX uid/gid，不做任何事
        return None


def default_accessor() -> MetadataAccessor:
    """按当前平台选择实现。"""
    return PosixMetadata() if os.name == "posix" else NullMetadata()


accessor: MetadataAccessor = default_accessor()
