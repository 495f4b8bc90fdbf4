"""
tar 归档引擎：把一组文件系统路径打成 tar 流，以及把 tar 流还原为目录树。

- preserve_metadata=False：GNU（传统）头部，不写 PAX 扩展记录；
- preserve_metadata=True：PAX 头部，每个条目都带纳秒级 mtime/atime/ctime 与数字 uid/gid，
  解包时还原权限、时间与属主。目录的元数据延后到所有条目写完后，按深度从深到浅统一应用，
  否则子条目的创建会立刻改掉父目录刚还原的 mtime。

元数据系统调用（chmod/utime/chown）失败只记录为 MetadataAdvisory，不中断解包；
内容读写失败一律抛出 ArchiveError 及其子类。
"""

from __future__ import annotations

import os
import posixpath
import stat
import tarfile
from decimal import ROUND_FLOOR, Decimal, InvalidOperation
from typing import Any, BinaryIO, Callable, Iterator

from cachemover import fsmeta
from cachemover.errors import (
    ArchiveError,
    ArchiveNotReadableError,
    PathResolutionError,
    SourceNotReachableError,
    UnsupportedEntryTypeError,
)
from cachemover.logging_config import get_logger
from cachemover.models import ArchiveOptions, DirMetadata, ExtractReport, MetadataAdvisory

DEFAULT_DIR_PERMISSION = 0o755
COPY_CHUNK_SIZE = 1024 * 1024  # 1 MiB

# 按普通文件还原的类型；字符/块设备与 FIFO 只还原为（空的）普通文件
REGULAR_TYPES = (tarfile.REGTYPE, tarfile.AREGTYPE, tarfile.CHRTYPE, tarfile.BLKTYPE, tarfile.FIFOTYPE)

_NS = 1_000_000_000
_READ_ERRORS = (tarfile.TarError, OSError, EOFError)

_log = get_logger(__name__)


# ------------------------- 路径 -------------------------


def relative(root: str, path: str) -> str:
    """
    计算 path 在归档中的相对名（相对于 root）。

    path 不在 root 之下时，relpath 产生的前导 ".." 段被逐个去掉（截断而非报错），
    结果总是以 "/" 分隔、不带前导 "/"。

    :param root: 归档根目录
    :param path: 文件系统路径
    :return: 归档内条目名，如 "sub/file.txt"
    """
    path = os.path.normpath(path)
    try:
        rel = os.path.relpath(os.path.dirname(path) or os.curdir, root or os.curdir)
    except ValueError as e:
        raise PathResolutionError(f"relative path <{path}>, base <{root}>: {e}") from e

    parts = rel.replace(os.sep, "/").split("/")
    clamped = 0
    while parts and parts[0] == "..":
        parts.pop(0)
        clamped += 1
    if clamped and os.path.abspath(path) != os.path.abspath(root or os.curdir):
        _log.warning("path <%s> is outside root <%s>, stripped %d leading '..'", path, root, clamped)

    parts = [p for p in parts if p not in ("", ".")]
    return "/".join(parts + [os.path.basename(path)])


def clean_name(name: str) -> str:
    """
    把归档条目名规整为目标目录下的安全相对名：去掉前导 "/"，并把越出根的 ".." 截断。

    "../../etc/x" -> "etc/x"，"a/../../b" -> "b"，"." -> ""。
    """
    if ".." in posixpath.normpath(name).split("/"):
        _log.warning("archive entry <%s> escapes the destination, clamped", name)
    return posixpath.normpath("/" + name).lstrip("/")


def path_depth(path: str) -> int:
    """路径深度：规整后路径分隔符的个数。"""
    return os.path.normpath(path).count(os.sep)


# ------------------------- PAX 时间 -------------------------


def format_pax_time(ns: int) -> str:
    """纳秒时间戳 -> PAX 记录值，如 1672574400 或 1672574400.5。"""
    sign = "-" if ns < 0 else ""
    sec, nsec = divmod(abs(ns), _NS)
    if nsec == 0:
        return f"{sign}{sec}"
    return f"{sign}{sec}.{nsec:09d}".rstrip("0")


def parse_pax_time(value: str) -> int:
    """PAX 记录值（或秒数字符串）-> 纳秒时间戳，超出纳秒的精度向下截断。"""
    return int(Decimal(value).scaleb(9).to_integral_value(rounding=ROUND_FLOOR))


def _pax_time(member: tarfile.TarInfo, key: str) -> int | None:
    value = member.pax_headers.get(key)
    if not value:
        return None
    try:
        return parse_pax_time(value)
    except InvalidOperation:
        _log.debug("ignoring malformed pax %s=%r for <%s>", key, value, member.name)
        return None


def header_times(member: tarfile.TarInfo) -> tuple[int, int]:
    """
    从条目头部取 (atime_ns, mtime_ns)。

    优先使用 PAX 记录中的原始字符串（保留纳秒）；没有 atime 时以 mtime 代替。
    """
    mtime_ns = _pax_time(member, "mtime")
    if mtime_ns is None:
        mtime_ns = parse_pax_time(str(member.mtime))
    atime_ns = _pax_time(member, "atime")
    if atime_ns is None:
        atime_ns = mtime_ns
    return atime_ns, mtime_ns


def _walk(top: str) -> Iterator[tuple[str, os.stat_result]]:
    """按字典序、先根后子地遍历 top，不跟随符号链接。"""
    st = os.lstat(top)
    yield top, st
    if stat.S_ISDIR(st.st_mode):
        for name in sorted(os.listdir(top)):
            yield from _walk(os.path.join(top, name))


# ------------------------- 归档引擎 -------------------------


class TarArchive:
    """
    tar 格式的归档引擎。

    每次 create/extract 都是独立、同步、单线程的一次遍历，调用之间不保留状态；
    并发解包到重叠的目标目录由调用方负责串行化。
    """

    def __init__(
        self,
        root: str = "",
        skip_symlinks: bool = False,
        preserve_metadata: bool = False,
        *,
        absolute_names: bool = False,
    ):
        """
        :param root: 归档根目录，条目名相对于它计算
        :param skip_symlinks: 是否跳过符号链接
        :param preserve_metadata: 是否记录并还原权限、属主与时间（PAX 格式）
        :param absolute_names: 是否让绝对源路径保留绝对名（解包时原样还原到该绝对路径）
        """
        self.options = ArchiveOptions(
            root=root,
            skip_symlinks=skip_symlinks,
            preserve_metadata=preserve_metadata,
            absolute_names=absolute_names,
        )

    # ------------------------- create -------------------------

    def create(self, srcs: list[str], fileobj: BinaryIO, is_relative_path: bool = False) -> int:
        """
        把 srcs 中每个路径（递归）写入 tar 流。

        :param srcs: 源路径列表，按顺序各自遍历
        :param fileobj: 输出字节流
        :param is_relative_path: True 时直接以遍历到的路径作为条目名，否则相对 root 计算
        :return: 写入的普通文件 payload 字节数
        :raises SourceNotReachableError: 某个源路径无法 stat
        :raises ArchiveError: 遍历、写头部或拷贝内容失败；written 为已写入的字节数
        """
        written = 0
        fmt = tarfile.PAX_FORMAT if self.options.preserve_metadata else tarfile.GNU_FORMAT
        try:
            with tarfile.open(fileobj=fileobj, mode="w|", format=fmt) as tw:
                for src in srcs:
                    try:
                        os.lstat(src)
                    except OSError as e:
                        raise SourceNotReachableError(
                            f"make sure file or directory readable <{src}>: {e}", written
                        ) from e
                    try:
                        for path, st in _walk(src):
                            written += self._write_entry(tw, path, st, is_relative_path)
                    except ArchiveError as e:
                        e.written = written
                        raise
                    except OSError as e:
                        raise ArchiveError(f"walk, add all files to archive <{src}>: {e}", written) from e
        except (OSError, tarfile.TarError) as e:
            raise ArchiveError(f"close tar writer: {e}", written) from e
        return written

    def _entry_name(self, path: str, is_relative_path: bool) -> str:
        if self.options.absolute_names and os.path.isabs(path):
            return os.path.abspath(path).replace(os.sep, "/")
        if is_relative_path:
            return path.replace(os.sep, "/")
        return relative(self.options.root, path)

    def _write_entry(self, tw: tarfile.TarFile, path: str, st: os.stat_result, is_relative_path: bool) -> int:
        _log.debug("add to archive: path=%s root=%s", path, self.options.root)

        if stat.S_ISLNK(st.st_mode) and self.options.skip_symlinks:
            return 0

        name = self._entry_name(path, is_relative_path)
        try:
            info = tw.gettarinfo(path, arcname=name)
        except OSError as e:
            raise ArchiveError(f"create header for <{path}>: {e}") from e
        if info is None:
            raise ArchiveError(f"create header for <{path}>: sockets not supported")

        # gettarinfo 会去掉前导 "/"
        if name.startswith("/"):
            info.name = name
            if info.islnk() and not info.linkname.startswith("/"):
                info.linkname = "/" + info.linkname

        if self.options.preserve_metadata:
            self._populate_metadata(info, st)
        else:
            info.mtime = int(info.mtime)

        try:
            if not info.isreg():
                tw.addfile(info)
                return 0
            with open(path, "rb") as f:
                tw.addfile(info, f)
        except (OSError, tarfile.TarError) as e:
            raise ArchiveError(f"write file to archive <{path}>: {e}") from e
        return info.size

    def _populate_metadata(self, info: tarfile.TarInfo, st: os.stat_result) -> None:
        accessor = fsmeta.accessor
        mtime_ns = st.st_mtime_ns
        atime_ns, ctime_ns, ok = accessor.extract_times(st)
        if not ok:
            atime_ns = ctime_ns = mtime_ns
        info.uid, info.gid = accessor.extract_owner(st)
        info.mtime = mtime_ns // _NS
        info.pax_headers = {
            "mtime": format_pax_time(mtime_ns),
            "atime": format_pax_time(atime_ns),
            "ctime": format_pax_time(ctime_ns),
        }

    # ------------------------- extract -------------------------

    def extract(self, dst: str, fileobj: BinaryIO) -> int:
        """
        从 tar 流读取条目并还原到 dst。

        :return: 写入的 payload 字节数
        :raises ArchiveNotReadableError: 输入流损坏或被截断
        :raises UnsupportedEntryTypeError: 遇到无法识别的条目类型
        :raises ArchiveError: 写入目标失败
        """
        return self.extract_with_report(dst, fileobj).written

    def extract_with_report(self, dst: str, fileobj: BinaryIO) -> ExtractReport:
        """同 extract，另外返回被忽略的元数据失败记录。"""
        report = _Extraction(self.options, dst).run(fileobj)
        _log.debug(
            "extracted %d bytes into %s (%d metadata advisories)", report.written, dst, len(report.advisories)
        )
        return report


class _Extraction:
    """单次解包的状态；pending_dirs 只属于本次调用，结束时清空。"""

    def __init__(self, options: ArchiveOptions, dst: str):
        self.options = options
        self.dst = os.path.abspath(dst)
        self.real_dst = os.path.realpath(self.dst)
        self.report = ExtractReport()
        self.pending_dirs: dict[str, DirMetadata] = {}

    def run(self, fileobj: BinaryIO) -> ExtractReport:
        try:
            tr = tarfile.open(fileobj=fileobj, mode="r|")
        except _READ_ERRORS as e:
            raise ArchiveNotReadableError(f"tar reader <{e}>", 0) from e

        with tr:
            while True:
                try:
                    member = tr.next()
                except _READ_ERRORS as e:
                    raise ArchiveNotReadableError(f"tar reader <{e}>", self.report.written) from e
                if member is None:
                    break
                self._restore(tr, member)

        self._flush_dirs()
        return self.report

    def _target(self, name: str) -> str:
        if self.options.absolute_names and name.startswith("/"):
            return os.path.normpath(name)
        rel = clean_name(name)
        return os.path.join(self.dst, *rel.split("/")) if rel else self.dst

    def _fail(self, message: str, err: Exception) -> ArchiveError:
        return ArchiveError(f"{message}: {err}", self.report.written)

    def _confined(self, name: str) -> bool:
        """条目名是否必须留在 dst 内（absolute_names 下的绝对名除外）。"""
        return not (self.options.absolute_names and name.startswith("/"))

    def _ensure_inside(self, name: str, path: str) -> None:
        """
        解析 path 中已存在的符号链接后确认仍在 dst 内。

        :raises ArchiveError: 路径经由之前解出的符号链接指向 dst 之外
        """
        real = os.path.realpath(path)
        if real == self.real_dst or real.startswith(os.path.join(self.real_dst, "")):
            return
        raise ArchiveError(
            f"extract <{name}>: path resolves outside destination <{self.dst}>: {real}", self.report.written
        )

    def _restore(self, tr: tarfile.TarFile, member: tarfile.TarInfo) -> None:
        target = self._target(member.name)
        _log.debug("extracting archive: path=%s", target)

        if self._confined(member.name) and target != self.dst:
            self._ensure_inside(member.name, os.path.dirname(target))

        try:
            os.makedirs(os.path.dirname(target), DEFAULT_DIR_PERMISSION, exist_ok=True)
        except OSError as e:
            raise self._fail(f"ensure directory <{target}>", e) from e

        if member.type == tarfile.DIRTYPE:
            self._restore_dir(member, target)
        elif member.type in REGULAR_TYPES:
            self._restore_regular(tr, member, target)
        elif member.type == tarfile.SYMTYPE:
            self._restore_symlink(member, target)
        elif member.type == tarfile.LNKTYPE:
            self._restore_hardlink(member, target)
        else:
            raise UnsupportedEntryTypeError(target, member.type, self.report.written)

    def _restore_dir(self, member: tarfile.TarInfo, target: str) -> None:
        if self._confined(member.name):
            self._ensure_inside(member.name, target)
        if not self.options.preserve_metadata:
            try:
                os.makedirs(target, member.mode, exist_ok=True)
            except OSError as e:
                raise self._fail(f"create directory <{target}>", e) from e
            return

        atime_ns, mtime_ns = header_times(member)
        self.pending_dirs[target] = DirMetadata(
            mode=member.mode,
            atime_ns=atime_ns,
            mtime_ns=mtime_ns,
            uid=member.uid,
            gid=member.gid,
        )
        # 先以宽松权限创建，保证之后子条目可写
        try:
            os.makedirs(target, DEFAULT_DIR_PERMISSION, exist_ok=True)
        except OSError as e:
            raise self._fail(f"create directory <{target}>", e) from e

    def _restore_regular(self, tr: tarfile.TarFile, member: tarfile.TarInfo, target: str) -> None:
        # 已存在的符号链接被替换为普通文件，而不是写穿到链接目标
        if os.path.islink(target):
            self._unlink(target)
        flags = os.O_CREAT | os.O_WRONLY | os.O_TRUNC | getattr(os, "O_NOFOLLOW", 0) | getattr(os, "O_BINARY", 0)
        try:
            fd = os.open(target, flags, member.mode)
        except OSError as e:
            raise self._fail(f"open extracted file for writing <{target}>", e) from e

        with os.fdopen(fd, "wb") as f:
            src = tr.extractfile(member) if member.isreg() else None
            if src is not None:
                self._copy(src, f, target)

        if self.options.preserve_metadata:
            self._apply_file_metadata(target, member)

    def _copy(self, src: BinaryIO, dst: BinaryIO, target: str) -> None:
        while True:
            try:
                chunk = src.read(COPY_CHUNK_SIZE)
            except _READ_ERRORS as e:
                raise ArchiveNotReadableError(
                    f"read archive payload for <{target}>: {e}", self.report.written
                ) from e
            if not chunk:
                return
            try:
                dst.write(chunk)
            except OSError as e:
                raise self._fail(f"copy extracted file for writing <{target}>", e) from e
            self.report.written += len(chunk)

    def _restore_symlink(self, member: tarfile.TarInfo, target: str) -> None:
        self._unlink(target)
        try:
            os.symlink(member.linkname, target)
        except OSError as e:
            raise self._fail(f"create symbolic link <{target}>", e) from e

        # 符号链接只还原属主，不改权限与时间
        accessor = fsmeta.accessor
        if self.options.preserve_metadata and accessor.supports_ownership:
            self._best_effort(
                "lchown", target, accessor.chown, target, member.uid, member.gid, follow_symlinks=False
            )

    def _restore_hardlink(self, member: tarfile.TarInfo, target: str) -> None:
        source = self._target(member.linkname)
        if self._confined(member.linkname):
            self._ensure_inside(member.name, source)
        self._unlink(target)
        try:
            os.link(source, target)
        except OSError as e:
            raise self._fail(f"create hard link <{target}> -> <{source}>", e) from e

        if self.options.preserve_metadata:
            self._apply_file_metadata(target, member)

    def _unlink(self, target: str) -> None:
        if not os.path.lexists(target):
            return
        try:
            if os.path.isdir(target) and not os.path.islink(target):
                os.rmdir(target)
            else:
                os.remove(target)
        except OSError as e:
            raise self._fail(f"unlink <{target}>", e) from e

    # ------------------------- 元数据 -------------------------

    def _best_effort(self, operation: str, path: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        try:
            fn(*args, **kwargs)
        except OSError as e:
            advisory = MetadataAdvisory(path=path, operation=operation, error=e)
            self.report.advisories.append(advisory)
            _log.debug("ignoring metadata failure: %s", advisory)

    def _apply(self, target: str, mode: int, atime_ns: int, mtime_ns: int, uid: int, gid: int) -> None:
        self._best_effort("chmod", target, os.chmod, target, mode)
        self._best_effort("utime", target, os.utime, target, ns=(atime_ns, mtime_ns))
        accessor = fsmeta.accessor
        if accessor.supports_ownership:
            self._best_effort("chown", target, accessor.chown, target, uid, gid)

    def _apply_file_metadata(self, target: str, member: tarfile.TarInfo) -> None:
        atime_ns, mtime_ns = header_times(member)
        self._apply(target, member.mode, atime_ns, mtime_ns, member.uid, member.gid)

    def _flush_dirs(self) -> None:
        """按深度从深到浅应用目录元数据，保证父目录的时间不会再被子目录的写入改动。"""
        if not self.options.preserve_metadata:
            return
        for target in sorted(self.pending_dirs, key=lambda p: (-path_depth(p), p)):
            meta = self.pending_dirs[target]
            self._apply(target, meta.mode, meta.atime_ns, meta.mtime_ns, meta.uid, meta.gid)
        self.pending_dirs.clear()
