"""
HFSBackend 集成测试：对真实 HFS 服务器执行 put / exists / list / get，并在结束后删除上传的对象。

需要运行中的 HFS（地址与账号见 tests.config），账号对 HFS_CACHE_FOLDER 有上传与删除权限；
服务器不可达时整个模块跳过。运行：pytest -m integration
"""

from __future__ import annotations

import io
import uuid
from pathlib import Path

import pytest

from cachemover import Cache, HFSBackend, ObjectNotFoundError, from_format

pytestmark = pytest.mark.integration


def _unique_key(suffix: str) -> str:
    return f"cachemover-it/{uuid.uuid4().hex[:8]}/{suffix}"


def _delete(backend: HFSBackend, key: str) -> None:
    backend.client.delete_file(backend.folder, key)


def test_put_exists_list_get(hfs_backend: HFSBackend) -> None:
    """上传后 exists 为 True、list 可见、get 内容一致。"""
    key = _unique_key("blob.tar")
    body = b"cachemover integration " * 1000
    try:
        hfs_backend.put(key, io.BytesIO(body))

        assert hfs_backend.exists(key) is True
        prefix = key.rsplit("/", 1)[0]
        entries = hfs_backend.list(prefix)
        assert [(e.path, e.size) for e in entries] == [(key, len(body))]

        out = io.BytesIO()
        hfs_backend.get(key, out, timeout=30)
        assert out.getvalue() == body
    finally:
        _delete(hfs_backend, key)


def test_missing_key(hfs_backend: HFSBackend) -> None:
    key = _unique_key("absent.tar")
    assert hfs_backend.exists(key) is False
    with pytest.raises(ObjectNotFoundError):
        hfs_backend.get(key, io.BytesIO())


def test_cache_roundtrip(hfs_backend: HFSBackend, tmp_path: Path, source_tree: Path) -> None:
    """经 HFS 存储的 zstd 缓存 rebuild 后 restore 到新目录。"""
    key = _unique_key("deps.tar.zst")
    cache = Cache(from_format(str(tmp_path), "zstd"), hfs_backend, timeout=60)
    try:
        assert cache.rebuild([str(source_tree)], key) == 1010
        report = cache.restore(str(tmp_path / "restored"), key)
        assert report.written == 1010
        assert (tmp_path / "restored" / "src" / "a.txt").read_bytes() == b"alpha"
    finally:
        _delete(hfs_backend, key)
