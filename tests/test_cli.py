"""
CLI（typer）单元测试。本地命令直接在 tmp_path 下执行；HFS 后端通过 mock 客户端验证，
不依赖真实服务器。URL、账号与缓存 key 均从 tests.config 读取。
"""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from typer.testing import CliRunner

from cachemover.cli import _format_size, _guess_format, app
from cachemover.cli_config import load_config, save_config

from tests.config import CACHE_KEY, HFS_BASE_URL, HFS_CACHE_FOLDER, HFS_PASSWORD, HFS_USERNAME

runner = CliRunner()


@pytest.fixture(autouse=True)
def _patch_config_path(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """将配置路径指向临时目录。"""
    config_dir = tmp_path / "cachemover-config"
    config_dir.mkdir(parents=True, exist_ok=True)

    def _config_dir():
        return config_dir

    monkeypatch.setattr("cachemover.cli_config._config_dir", _config_dir)


@pytest.fixture
def storage(tmp_path: Path) -> Path:
    return tmp_path / "storage"


# ------------------------- helpers -------------------------


def test_format_size() -> None:
    assert _format_size(0) == "0 B"
    assert _format_size(1023) == "1023 B"
    assert _format_size(1536) == "1.5 KiB"
    assert _format_size(5 * 1024 * 1024) == "5.0 MiB"
    assert _format_size(3 * 1024 * 1024 * 1024) == "3.0 GiB"


def test_guess_format() -> None:
    """按扩展名推断归档格式。"""
    assert _guess_format(Path("a.tar")) == "tar"
    assert _guess_format(Path("a.tar.gz")) == "gzip"
    assert _guess_format(Path("A.TGZ")) == "gzip"
    assert _guess_format(Path("a.tar.zst")) == "zstd"
    assert _guess_format(Path("a.bin")) == "tar"


# ------------------------- login / logout / info -------------------------


def test_login_hfs_saves_config() -> None:
    """login 使用参数时保存 HFS 配置并输出 Saved.。"""
    result = runner.invoke(
        app,
        [
            "login",
            "--base-url", HFS_BASE_URL + "/",
            "--folder", f"/{HFS_CACHE_FOLDER}/",
            "--username", HFS_USERNAME,
            "--password", HFS_PASSWORD,
        ],
    )
    assert result.exit_code == 0, result.output
    assert "Saved." in result.output

    cfg = load_config()
    assert cfg == {
        "backend": "hfs",
        "base_url": HFS_BASE_URL,
        "folder": HFS_CACHE_FOLDER,
        "username": HFS_USERNAME,
        "password": HFS_PASSWORD,
    }


def test_login_fs_saves_absolute_root(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """fs 后端保存解析后的绝对目录。"""
    monkeypatch.chdir(tmp_path)
    result = runner.invoke(app, ["login", "--backend", "fs", "--storage-root", "storage"])
    assert result.exit_code == 0, result.output

    cfg = load_config()
    assert cfg is not None
    assert cfg["backend"] == "fs"
    assert Path(cfg["storage_root"]) == (tmp_path / "storage").resolve()


def test_login_unknown_backend() -> None:
    result = runner.invoke(app, ["login", "--backend", "s3"])
    assert result.exit_code == 1
    assert "unknown backend" in result.output
    assert load_config() is None


def test_logout() -> None:
    """有配置时清除并输出 Cleared.，否则输出 No saved config.。"""
    save_config("fs", storage_root="/tmp/x")
    result = runner.invoke(app, ["logout"])
    assert result.exit_code == 0
    assert "Cleared." in result.output
    assert load_config() is None

    result = runner.invoke(app, ["logout"])
    assert "No saved config." in result.output


def test_info_not_configured() -> None:
    result = runner.invoke(app, ["info"])
    assert result.exit_code == 0
    assert "Not configured" in result.output


def test_info_shows_saved_settings() -> None:
    save_config("hfs", base_url=HFS_BASE_URL, folder=HFS_CACHE_FOLDER, username=HFS_USERNAME, password=HFS_PASSWORD)
    result = runner.invoke(app, ["info"])
    assert result.exit_code == 0
    assert f"base_url: {HFS_BASE_URL}" in result.output
    assert f"folder: {HFS_CACHE_FOLDER}" in result.output
    assert "auth: yes" in result.output
    assert HFS_PASSWORD not in result.output

    save_config("fs", storage_root="/srv/cache")
    result = runner.invoke(app, ["info"])
    assert "backend: fs" in result.output
    assert "storage_root: /srv/cache" in result.output


# ------------------------- rebuild / restore / exists / list -------------------------


def test_rebuild_and_restore_with_storage_root(tmp_path: Path, source_tree: Path, storage: Path) -> None:
    """--storage-root 指定本地存储：rebuild 上传，restore 还原到 --dest。"""
    result = runner.invoke(
        app,
        ["rebuild", str(source_tree), "--key", CACHE_KEY, "--root", str(tmp_path), "--storage-root", str(storage)],
    )
    assert result.exit_code == 0, result.output
    assert f"Rebuilt {CACHE_KEY}" in result.output
    assert (storage / CACHE_KEY).is_file()

    dest = tmp_path / "restored"
    result = runner.invoke(app, ["restore", "--key", CACHE_KEY, "--dest", str(dest), "--storage-root", str(storage)])
    assert result.exit_code == 0, result.output
    assert f"Restored {CACHE_KEY}" in result.output
    assert (dest / "src" / "sub" / "deeper" / "c.txt").read_bytes() == b"gamma"


def test_rebuild_uses_saved_config(tmp_path: Path, source_tree: Path, storage: Path) -> None:
    """已 login 的 fs 配置无需再传 --storage-root。"""
    save_config("fs", storage_root=str(storage))
    result = runner.invoke(
        app, ["rebuild", str(source_tree), "-k", CACHE_KEY, "-r", str(tmp_path), "--format", "gzip"]
    )
    assert result.exit_code == 0, result.output
    assert (storage / CACHE_KEY).read_bytes()[:2] == b"\x1f\x8b"


def test_rebuild_without_storage(tmp_path: Path, source_tree: Path) -> None:
    """没有保存配置也没有传存储参数时报错。"""
    result = runner.invoke(app, ["rebuild", str(source_tree), "--key", CACHE_KEY])
    assert result.exit_code == 1
    assert "no storage configured" in result.output


def test_rebuild_missing_source(tmp_path: Path, storage: Path) -> None:
    result = runner.invoke(
        app, ["rebuild", str(tmp_path / "missing"), "--key", CACHE_KEY, "--storage-root", str(storage)]
    )
    assert result.exit_code == 1
    assert "error:" in result.output


def test_rebuild_unknown_format(tmp_path: Path, source_tree: Path, storage: Path) -> None:
    result = runner.invoke(
        app, ["rebuild", str(source_tree), "--key", CACHE_KEY, "--format", "rar", "--storage-root", str(storage)]
    )
    assert result.exit_code == 1
    assert "unknown archive format" in result.output


def test_restore_cache_miss(tmp_path: Path, storage: Path) -> None:
    """key 不存在时输出 Cache miss 但不算失败。"""
    result = runner.invoke(
        app, ["restore", "--key", "absent.tar", "--dest", str(tmp_path / "d"), "--storage-root", str(storage)]
    )
    assert result.exit_code == 0
    assert "Cache miss: absent.tar" in result.output


def test_exists_and_list(tmp_path: Path, source_tree: Path, storage: Path) -> None:
    """exists 输出 yes/no（no 时退出码 1）；list 按前缀列出对象。"""
    runner.invoke(app, ["rebuild", str(source_tree), "-k", CACHE_KEY, "-r", str(tmp_path), "--storage-root", str(storage)])

    result = runner.invoke(app, ["exists", CACHE_KEY, "--storage-root", str(storage)])
    assert result.exit_code == 0
    assert "yes" in result.output

    result = runner.invoke(app, ["exists", "repo/none.tar", "--storage-root", str(storage)])
    assert result.exit_code == 1
    assert "no" in result.output

    result = runner.invoke(app, ["list", "repo/", "--storage-root", str(storage)])
    assert result.exit_code == 0
    assert CACHE_KEY in result.output

    result = runner.invoke(app, ["list", "other/", "--storage-root", str(storage)])
    assert result.exit_code == 0
    assert CACHE_KEY not in result.output


def test_list_with_hfs_backend() -> None:
    """保存的 hfs 配置选择 HFS 后端，用保存的账号与目录创建客户端。"""
    save_config("hfs", base_url=HFS_BASE_URL, folder=HFS_CACHE_FOLDER, username=HFS_USERNAME, password=HFS_PASSWORD)
    mock_client = MagicMock()
    mock_client.list_entries.return_value = [{"n": "deps.tar", "s": 2048}, {"n": "sub/"}]

    with patch("cachemover.cli.HFSClient", return_value=mock_client) as client_cls:
        result = runner.invoke(app, ["list", "repo/main"])

    assert result.exit_code == 0, result.output
    assert "repo/main/deps.tar" in result.output
    assert "2.0 KiB" in result.output
    client_cls.assert_called_once_with(
        base_url=HFS_BASE_URL, username=HFS_USERNAME, password=HFS_PASSWORD, timeout=30.0
    )
    mock_client.list_entries.assert_called_once_with(f"/{HFS_CACHE_FOLDER}/repo/main", request_c_and_m=True)
    mock_client.close.assert_called_once_with()


# ------------------------- pack / unpack -------------------------


def test_pack_and_unpack(tmp_path: Path, source_tree: Path) -> None:
    """pack 按 --output 扩展名选择格式；unpack 按文件名推断格式。"""
    out = tmp_path / "deps.tar.zst"
    result = runner.invoke(app, ["pack", str(source_tree), "-o", str(out), "--root", str(tmp_path)])
    assert result.exit_code == 0, result.output
    assert "Packed 1010 B" in result.output
    assert out.read_bytes()[:4] == b"\x28\xb5\x2f\xfd"

    dest = tmp_path / "unpacked"
    result = runner.invoke(app, ["unpack", str(out), "-d", str(dest)])
    assert result.exit_code == 0, result.output
    assert (dest / "src" / "a.txt").read_bytes() == b"alpha"


def test_pack_default_output(tmp_path: Path, source_tree: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """未给 --output 时写入当前目录的 cache + 格式扩展名。"""
    monkeypatch.chdir(tmp_path)
    result = runner.invoke(app, ["pack", "src", "--format", "gzip"])
    assert result.exit_code == 0, result.output
    assert (tmp_path / "cache.tar.gz").is_file()


def test_unpack_missing_file(tmp_path: Path) -> None:
    result = runner.invoke(app, ["unpack", str(tmp_path / "none.tar")])
    assert result.exit_code == 1
    assert "not found" in result.output


def test_unpack_corrupt_file(tmp_path: Path) -> None:
    bad = tmp_path / "bad.tar"
    bad.write_bytes(b"not a tar" * 100)
    result = runner.invoke(app, ["unpack", str(bad), "-d", str(tmp_path / "d")])
    assert result.exit_code == 1
    assert "error:" in result.output
