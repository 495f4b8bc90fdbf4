"""
存储后端：按 key 存取缓存归档。

每个后端提供 get/put/exists/list 四个操作，都接受可选的 cancel（threading.Event）
与 timeout（秒）：阻塞调用在后台线程执行，与取消信号/截止时间竞速，信号先到则抛出
StorageCancelledError。被放弃的后台调用会收到 stop 信号，之后对 reader/writer 的
读写都抛出 StorageCancelledError，FilesystemBackend 也不再把临时文件换入目标路径。
归档引擎只读写普通字节流，从不直接访问存储。
"""

from __future__ import annotations

import os
import shutil
import tempfile
import threading
import time
from datetime import datetime, timezone
from typing import Any, BinaryIO, Callable

import httpx

from cachemover.client import HFSClient
from cachemover.errors import ObjectNotFoundError, StorageCancelledError, StorageError
from cachemover.logging_config import get_logger
from cachemover.models import FileEntry, entry_is_folder, entry_modified, entry_name, entry_size
from cachemover.tar_archive import clean_name

_POLL_INTERVAL = 0.05
UPLOAD_TMP_PREFIX = ".upload-"

_log = get_logger(__name__)


def run_cancellable(
    operation: str,
    fn: Callable[..., Any],
    *args: Any,
    cancel: threading.Event | None = None,
    timeout: float | None = None,
    stop: threading.Event | None = None,
) -> Any:
    """
    执行 fn(*args)，与取消信号和截止时间竞速。

    未给出 cancel 与 timeout 时直接在当前线程调用。信号先到时置位 stop 并立即返回错误，
    后台线程中的调用不会被强行中止，fn 自己通过 stop 感知并尽快退出，其结果被丢弃。

    :param operation: 操作名，用于错误信息
    :param stop: 可选，放弃等待时置位，交给 fn 检查
    :raises StorageCancelledError: 被取消或超时
    """
    if cancel is None and timeout is None:
        return fn(*args)
    if cancel is not None and cancel.is_set():
        raise StorageCancelledError(f"{operation}: cancelled")

    result: dict[str, Any] = {}
    done = threading.Event()

    def target() -> None:
        try:
            result["value"] = fn(*args)
        except Exception as e:
            result["error"] = e
        finally:
            done.set()

    threading.Thread(target=target, name=f"cachemover-{operation}", daemon=True).start()

    deadline = time.monotonic() + timeout if timeout is not None else None
    while True:
        wait = _POLL_INTERVAL
        if deadline is not None:
            wait = max(0.0, min(wait, deadline - time.monotonic()))
        if done.wait(wait):
            break
        reason = None
        if cancel is not None and cancel.is_set():
            reason = "cancelled"
        elif deadline is not None and time.monotonic() >= deadline:
            reason = f"deadline exceeded after {timeout}s"
        if reason is not None:
            if stop is not None:
                stop.set()
            _log.debug("%s abandoned: %s", operation, reason)
            raise StorageCancelledError(f"{operation}: {reason}")

    if "error" in result:
        raise result["error"]
    return result.get("value")


class _GuardedStream:
    """包装后台线程使用的 reader/writer：stop 置位后的读写抛出 StorageCancelledError。"""

    def __init__(self, raw: BinaryIO, stop: threading.Event, operation: str):
        self._raw = raw
        self._stop = stop
        self._operation = operation

    def _check(self) -> None:
        if self._stop.is_set():
            raise StorageCancelledError(f"{self._operation}: abandoned by caller")

    def read(self, size: int = -1) -> bytes:
        self._check()
        return self._raw.read(size)

    def write(self, data: bytes) -> int:
        self._check()
        return self._raw.write(data)

    def seek(self, offset: int, whence: int = os.SEEK_SET) -> int:
        return self._raw.seek(offset, whence)

    def tell(self) -> int:
        return self._raw.tell()


class Backend:
    """存储后端基类；子类实现 _get/_put/_exists/_list。"""

    name = "backend"

    def get(self, key: str, writer: BinaryIO, *, cancel: threading.Event | None = None, timeout: float | None = None) -> None:
        """把 key 对应对象的内容写入 writer；不存在时抛出 ObjectNotFoundError。"""
        self._transfer("get", self._get, key, writer, cancel, timeout)

    def put(self, key: str, reader: BinaryIO, *, cancel: threading.Event | None = None, timeout: float | None = None) -> None:
        """把 reader 的内容上传为 key，已存在则覆盖。"""
        self._transfer("put", self._put, key, reader, cancel, timeout)

    def exists(self, key: str, *, cancel: threading.Event | None = None, timeout: float | None = None) -> bool:
        return run_cancellable("exists", self._exists, key, cancel=cancel, timeout=timeout)

    def list(self, prefix: str = "", *, cancel: threading.Event | None = None, timeout: float | None = None) -> list[FileEntry]:
        return run_cancellable("list", self._list, prefix, cancel=cancel, timeout=timeout)

    def close(self) -> None:
        return None

    def __enter__(self) -> Backend:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def _transfer(
        self,
        operation: str,
        fn: Callable[[str, BinaryIO, threading.Event | None], None],
        key: str,
        stream: BinaryIO,
        cancel: threading.Event | None,
        timeout: float | None,
    ) -> None:
        if cancel is None and timeout is None:
            fn(key, stream, None)
            return
        stop = threading.Event()
        guarded = _GuardedStream(stream, stop, f"{operation} <{key}>")
        run_cancellable(operation, fn, key, guarded, stop, cancel=cancel, timeout=timeout, stop=stop)

    def _get(self, key: str, writer: BinaryIO, stop: threading.Event | None) -> None:
        raise NotImplementedError

    def _put(self, key: str, reader: BinaryIO, stop: threading.Event | None) -> None:
        raise NotImplementedError

    def _exists(self, key: str) -> bool:
        raise NotImplementedError

    def _list(self, prefix: str) -> list[FileEntry]:
        raise NotImplementedError


# ------------------------- 本地文件系统 -------------------------


class FilesystemBackend(Backend):
    """以本地目录（如挂载的卷）作为存储；key 为 root 下的相对路径。"""

    name = "fs"

    def __init__(self, root: str):
        self.root = os.path.abspath(root)

    def _path(self, key: str) -> str:
        rel = clean_name(key)
        if not rel:
            raise StorageError(f"invalid key: {key!r}")
        return os.path.join(self.root, *rel.split("/"))

    def _get(self, key: str, writer: BinaryIO, stop: threading.Event | None) -> None:
        path = self._path(key)
        try:
            with open(path, "rb") as f:
                shutil.copyfileobj(f, writer)
        except FileNotFoundError as e:
            raise ObjectNotFoundError(f"get <{key}>: not found in {self.root}") from e
        except OSError as e:
            raise StorageError(f"get <{key}>: {e}") from e

    def _put(self, key: str, reader: BinaryIO, stop: threading.Event | None) -> None:
        """先写同目录下的临时文件再 os.replace；stop 已置位时丢弃临时文件，目标保持不变。"""
        path = self._path(key)
        tmp_path = None
        try:
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with tempfile.NamedTemporaryFile(dir=os.path.dirname(path), prefix=UPLOAD_TMP_PREFIX, delete=False) as tmp:
                tmp_path = tmp.name
                shutil.copyfileobj(reader, tmp)
            if stop is not None and stop.is_set():
                raise StorageCancelledError(f"put <{key}>: abandoned by caller")
            os.replace(tmp_path, path)
        except OSError as e:
            _discard(tmp_path)
            raise StorageError(f"put <{key}>: {e}") from e
        except Exception:
            _discard(tmp_path)
            raise
        _log.debug("stored <%s> at %s", key, path)

    def _exists(self, key: str) -> bool:
        return os.path.isfile(self._path(key))

    def _list(self, prefix: str) -> list[FileEntry]:
        """列出 prefix 目录（按完整路径段匹配）下的全部对象，跳过未完成的上传临时文件。"""
        prefix = prefix.strip("/")
        entries: list[FileEntry] = []
        for dirpath, _, filenames in os.walk(self.root):
            for filename in filenames:
                if filename.startswith(UPLOAD_TMP_PREFIX):
                    continue
                full = os.path.join(dirpath, filename)
                rel = os.path.relpath(full, self.root).replace(os.sep, "/")
                if prefix and rel != prefix and not rel.startswith(prefix + "/"):
                    continue
                st = os.stat(full)
                entries.append(
                    FileEntry(
                        path=rel,
                        size=st.st_size,
                        last_modified=datetime.fromtimestamp(st.st_mtime, tz=timezone.utc),
                    )
                )
        entries.sort(key=lambda e: e.path)
        return entries


def _discard(tmp_path: str | None) -> None:
    if tmp_path and os.path.exists(tmp_path):
        os.unlink(tmp_path)


# ------------------------- HFS -------------------------


class HFSBackend(Backend):
    """
    以 HFS 服务器上的一个目录作为存储。

    key 可含子路径（如 "repo/branch/archive.tar"），上传时服务端自动创建中间目录；
    list 只列出前缀目录下的直接文件。
    """

    name = "hfs"

    def __init__(self, client: HFSClient, folder: str = ""):
        self.client = client
        self.folder = folder.strip("/")

    def _remote(self, key: str) -> str:
        key = key.strip("/")
        return f"{self.folder}/{key}" if self.folder else key

    def _get(self, key: str, writer: BinaryIO, stop: threading.Event | None) -> None:
        try:
            self.client.download_to(self._remote(key), writer)
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 404:
                raise ObjectNotFoundError(f"get <{key}>: not found") from e
            raise StorageError(f"get <{key}>: {e}") from e
        except httpx.HTTPError as e:
            raise StorageError(f"get <{key}>: {e}") from e

    def _put(self, key: str, reader: BinaryIO, stop: threading.Event | None) -> None:
        try:
            r = self.client.upload_file(self.folder, key, reader)
        except httpx.HTTPError as e:
            raise StorageError(f"put <{key}>: {e}") from e
        if r.status_code not in (200, 201, 204):
            raise StorageError(f"put <{key}>: upload {r.status_code} {r.text}")
        _log.debug("uploaded <%s> to %s", key, self.client.get_resource_url(self._remote(key)))

    def _entries(self, remote_dir: str) -> list[dict[str, Any]]:
        uri = "/" + remote_dir.strip("/")
        try:
            return self.client.list_entries(uri, request_c_and_m=True)
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 404:
                return []
            raise StorageError(f"list <{uri}>: {e}") from e
        except httpx.HTTPError as e:
            raise StorageError(f"list <{uri}>: {e}") from e

    def _exists(self, key: str) -> bool:
        remote = self._remote(key)
        parent, _, name = remote.rpartition("/")
        return any(
            entry_name(e) == name and not entry_is_folder(e)
            for e in self._entries(parent)
        )

    def _list(self, prefix: str) -> list[FileEntry]:
        prefix = prefix.strip("/")
        entries = []
        for e in self._entries(self._remote(prefix) if prefix else self.folder):
            if entry_is_folder(e):
                continue
            path = f"{prefix}/{entry_name(e)}" if prefix else entry_name(e)
            entries.append(FileEntry(path=path, size=entry_size(e), last_modified=entry_modified(e)))
        return entries

    def close(self) -> None:
        self.client.close()
