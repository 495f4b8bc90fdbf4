"""
CLI 本地配置：保存/读取存储后端（类型、base_url 或本地目录、账号）与默认选项。
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

# 可保存的键；命令行参数优先于这里的值
CONFIG_KEYS = ("backend", "base_url", "storage_root", "folder", "username", "password")


def _config_dir() -> Path:
    """配置目录：~/.config/cachemover（所有平台统一）。"""
    return Path.home() / ".config" / "cachemover"


def _config_path() -> Path:
    return _config_dir() / "config.json"


def load_config() -> dict[str, Any] | None:
    """读取本地配置；不存在或无效（非 JSON 对象、缺少 backend）则返回 None。"""
    p = _config_path()
    if not p.exists():
        return None
    try:
        data = json.loads(p.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None
    if not isinstance(data, dict) or "backend" not in data:
        return None
    return data


def save_config(
    backend: str,
    *,
    base_url: str | None = None,
    storage_root: str | None = None,
    folder: str | None = None,
    username: str | None = None,
    password: str | None = None,
) -> None:
    """保存后端配置到本地；值为 None 的键不写入。"""
    p = _config_path()
    p.parent.mkdir(parents=True, exist_ok=True)
    data: dict[str, Any] = {"backend": backend}
    if base_url is not None:
        data["base_url"] = base_url.rstrip("/")
    if storage_root is not None:
        data["storage_root"] = storage_root
    if folder is not None:
        data["folder"] = folder.strip("/")
    if username is not None:
        data["username"] = username
    if password is not None:
        data["password"] = password
    p.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")


def clear_config() -> bool:
    """清除本地配置；存在则删除并返回 True。"""
    p = _config_path()
    if p.exists():
        p.unlink()
        return True
    return False
