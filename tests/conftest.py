"""
pytest 配置与共享 fixture。

测试目标与账号见 tests.config。
- 单元测试使用 tmp_path 下的源目录与 FilesystemBackend，不访问网络；
- 集成测试（integration 标记）对 HFS_TEST_ACCOUNTS 中每个账号各执行一次，服务器不可达时跳过。
"""

from __future__ import annotations

from pathlib import Path
from typing import Iterator

import pytest

from cachemover import HFSBackend, HFSClient
from cachemover.storage import FilesystemBackend

from tests.config import HFS_BASE_URL, HFS_CACHE_FOLDER, HFS_TEST_ACCOUNTS


@pytest.fixture
def source_tree(tmp_path: Path) -> Path:
    """
    示例源目录：
        src/
          a.txt            "alpha"
          sub/b.bin        1000 字节
          sub/deeper/c.txt "gamma"
          empty/
    """
    root = tmp_path / "src"
    (root / "sub" / "deeper").mkdir(parents=True)
    (root / "empty").mkdir()
    (root / "a.txt").write_bytes(b"alpha")
    (root / "sub" / "b.bin").write_bytes(bytes(range(256)) * 3 + b"x" * 232)
    (root / "sub" / "deeper" / "c.txt").write_bytes(b"gamma")
    return root


@pytest.fixture
def fs_backend(tmp_path: Path) -> FilesystemBackend:
    """以临时目录作为存储的后端。"""
    return FilesystemBackend(str(tmp_path / "storage"))


@pytest.fixture(scope="module", params=[pytest.param(acc, id=acc["username"]) for acc in HFS_TEST_ACCOUNTS])
def hfs_backend(request: pytest.FixtureRequest) -> Iterator[HFSBackend]:
    """
    使用测试账号的 HFS 后端；每个 HFS_TEST_ACCOUNTS 账号各跑一遍。
    若服务器不可达则跳过整个模块。
    """
    acc = request.param
    client = HFSClient(
        base_url=HFS_BASE_URL,
        username=acc["username"],
        password=acc["password"],
        timeout=10.0,
    )
    try:
        client.get_file_list(uri=f"/{HFS_CACHE_FOLDER}")
    except Exception as e:
        client.close()
        pytest.skip(f"HFS 测试服务器不可用 ({HFS_BASE_URL}): {e}")
    backend = HFSBackend(client, HFS_CACHE_FOLDER)
    yield backend
    backend.close()
