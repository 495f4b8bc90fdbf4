"""
cachemover CLI：保存一次存储配置，之后 rebuild/restore 直接使用；也可只在本地 pack/unpack。
"""

from __future__ import annotations

import getpass
from pathlib import Path
from typing import Annotated, Optional

import typer

from cachemover.cache import Cache
from cachemover.cli_config import clear_config, load_config, save_config
from cachemover.client import HFSClient
from cachemover.compression import EXTENSIONS, FORMATS, GZIP, TAR, ZSTD, CompressedArchive, from_format
from cachemover.errors import CacheMoverError, ObjectNotFoundError
from cachemover.logging_config import configure_logging
from cachemover.storage import Backend, FilesystemBackend, HFSBackend

BACKENDS = ("fs", "hfs")


def _format_size(n: int) -> str:
    """将字节数格式化为人类可读（KiB/MiB/GiB）。"""
    if n < 1024:
        return f"{n} B"
    if n < 1024 * 1024:
        return f"{n / 1024:.1f} KiB"
    if n < 1024 * 1024 * 1024:
        return f"{n / (1024 * 1024):.1f} MiB"
    return f"{n / (1024 * 1024 * 1024):.1f} GiB"


def _guess_format(path: Path) -> str:
    """按扩展名推断归档格式：.tar.gz/.tgz -> gzip，.tar.zst/.tzst -> zstd，其它 -> tar。"""
    name = path.name.lower()
    if name.endswith((".tar.gz", ".tgz")):
        return GZIP
    if name.endswith((".tar.zst", ".tzst")):
        return ZSTD
    return TAR


app = typer.Typer(
    name="cachemover",
    help="Pack paths into a tar archive, ship it to storage under a key, and restore it later.",
)

# 可选参数：覆盖保存的存储配置
_backend_option: type = Annotated[
    Optional[str],
    typer.Option("--backend", help=f"Storage backend: {' | '.join(BACKENDS)} (default: saved)"),
]
_base_url_option: type = Annotated[
    Optional[str],
    typer.Option("--base-url", "-b", help="HFS base URL (overrides saved)"),
]
_storage_root_option: type = Annotated[
    Optional[str],
    typer.Option("--storage-root", help="Local storage directory for the fs backend (overrides saved)"),
]
_format_option: type = Annotated[
    str,
    typer.Option("--format", "-F", help=f"Archive format: {' | '.join(FORMATS)}"),
]
_preserve_option: type = Annotated[
    bool,
    typer.Option("--preserve-metadata", help="Keep permissions, ownership and timestamps (PAX headers)"),
]
_skip_symlinks_option: type = Annotated[
    bool,
    typer.Option("--skip-symlinks", help="Leave symbolic links out of the archive"),
]
_root_option: type = Annotated[
    Optional[str],
    typer.Option("--root", "-r", help="Archive root; entry names are relative to it (default: cwd)"),
]


@app.callback()
def _main(
    log_level: Annotated[Optional[str], typer.Option("--log-level", help="DEBUG, INFO, WARNING, ERROR")] = None,
) -> None:
    configure_logging(log_level)


def _get_backend(backend: str | None, base_url: str | None, storage_root: str | None) -> Backend | None:
    cfg = load_config() or {}
    kind = backend or cfg.get("backend") or ("hfs" if base_url else "fs" if storage_root else None)
    if kind == "fs":
        root = storage_root or cfg.get("storage_root")
        return FilesystemBackend(root) if root else None
    if kind == "hfs":
        url = base_url or cfg.get("base_url")
        if not url:
            return None
        client = HFSClient(base_url=url, username=cfg.get("username"), password=cfg.get("password"), timeout=30.0)
        return HFSBackend(client, cfg.get("folder") or "")
    return None


def _require_backend(backend: str | None, base_url: str | None, storage_root: str | None) -> Backend:
    if backend is not None and backend not in BACKENDS:
        typer.echo(f"error: unknown backend: {backend} (expected {' or '.join(BACKENDS)})", err=True)
        raise typer.Exit(1)
    b = _get_backend(backend, base_url, storage_root)
    if b is None:
        typer.echo("error: no storage configured. run 'cachemover login' or pass --storage-root / --base-url", err=True)
        raise typer.Exit(1)
    return b


def _make_archive(root: str | None, fmt: str, preserve_metadata: bool, skip_symlinks: bool) -> CompressedArchive:
    try:
        return from_format(
            root or str(Path.cwd()),
            fmt,
            skip_symlinks=skip_symlinks,
            preserve_metadata=preserve_metadata,
        )
    except CacheMoverError as e:
        typer.echo(f"error: {e}", err=True)
        raise typer.Exit(1)


# ------------------------- login / logout / info -------------------------


@app.command("login", help="Save storage settings to local config")
def login(
    backend: Annotated[str, typer.Option("--backend", help=f"Storage backend: {' | '.join(BACKENDS)}")] = "hfs",
    base_url: Annotated[Optional[str], typer.Option("--base-url", "-b", help="HFS base URL")] = None,
    storage_root: Annotated[Optional[str], typer.Option("--storage-root", help="Local storage directory (fs)")] = None,
    folder: Annotated[Optional[str], typer.Option("--folder", "-f", help="Remote folder for cache objects (hfs)")] = None,
    username: Annotated[Optional[str], typer.Option("--username", "-u", help="Username")] = None,
    password: Annotated[Optional[str], typer.Option("--password", "-p", help="Password (unsafe in shell)")] = None,
) -> None:
    if backend not in BACKENDS:
        typer.echo(f"error: unknown backend: {backend}", err=True)
        raise typer.Exit(1)
    if backend == "fs":
        storage_root = storage_root or input("Storage directory: ").strip()
        if not storage_root:
            typer.echo("error: storage directory required", err=True)
            raise typer.Exit(1)
        save_config("fs", storage_root=str(Path(storage_root).expanduser().resolve()))
        typer.echo("Saved.")
        return
    base_url = base_url or input("Base URL (e.g. http://127.0.0.1:8280): ").strip()
    if not base_url:
        typer.echo("error: base URL required", err=True)
        raise typer.Exit(1)
    username = username or input("Username: ").strip() or None
    if username and password is None:
        password = getpass.getpass("Password: ")
    save_config("hfs", base_url=base_url, folder=folder, username=username, password=password)
    typer.echo("Saved.")


@app.command("logout", help="Clear saved storage settings")
def logout() -> None:
    if clear_config():
        typer.echo("Cleared.")
    else:
        typer.echo("No saved config.")


@app.command("info", help="Show saved storage settings")
def info_cmd() -> None:
    cfg = load_config()
    if not cfg:
        typer.echo("Not configured. Run 'cachemover login' or pass --storage-root / --base-url.")
        return
    typer.echo(f"backend: {cfg.get('backend')}")
    if cfg.get("backend") == "fs":
        typer.echo(f"storage_root: {cfg.get('storage_root')}")
        return
    typer.echo(f"base_url: {cfg.get('base_url')}")
    typer.echo(f"folder: {cfg.get('folder') or '/'}")
    typer.echo(f"auth: {'yes' if (cfg.get('username') and cfg.get('password')) else 'no'}")


# ------------------------- rebuild / restore -------------------------


@app.command("rebuild", help="Archive paths and upload them under a cache key")
def rebuild_cmd(
    paths: Annotated[list[str], typer.Argument(help="Files or directories to cache")],
    key: Annotated[str, typer.Option("--key", "-k", help="Cache key (object path in storage)")],
    root: _root_option = None,
    fmt: _format_option = TAR,
    preserve_metadata: _preserve_option = False,
    skip_symlinks: _skip_symlinks_option = False,
    override: Annotated[bool, typer.Option("--override/--no-override", help="Replace an existing cache")] = True,
    backend: _backend_option = None,
    base_url: _base_url_option = None,
    storage_root: _storage_root_option = None,
) -> None:
    archive = _make_archive(root, fmt, preserve_metadata, skip_symlinks)
    with _require_backend(backend, base_url, storage_root) as b:
        try:
            written = Cache(archive, b).rebuild(paths, key, override=override)
        except CacheMoverError as e:
            typer.echo(f"error: {e}", err=True)
            raise typer.Exit(1)
    typer.echo(f"Rebuilt {key} ({_format_size(written)}).")


@app.command("restore", help="Download a cache key and extract it")
def restore_cmd(
    key: Annotated[str, typer.Option("--key", "-k", help="Cache key (object path in storage)")],
    dest: Annotated[Path, typer.Option("--dest", "-d", help="Destination directory (default: cwd)")] = Path("."),
    fmt: _format_option = TAR,
    preserve_metadata: _preserve_option = False,
    backend: _backend_option = None,
    base_url: _base_url_option = None,
    storage_root: _storage_root_option = None,
) -> None:
    archive = _make_archive(str(dest), fmt, preserve_metadata, False)
    with _require_backend(backend, base_url, storage_root) as b:
        try:
            report = Cache(archive, b).restore(str(dest), key)
        except ObjectNotFoundError:
            typer.echo(f"Cache miss: {key}", err=True)
            return
        except CacheMoverError as e:
            typer.echo(f"error: {e}", err=True)
            raise typer.Exit(1)
    for advisory in report.advisories:
        typer.echo(f"  warning: {advisory}", err=True)
    typer.echo(f"Restored {key} ({_format_size(report.written)}).")


# ------------------------- list / exists -------------------------


@app.command("list", help="List cache objects under a prefix")
def list_cmd(
    prefix: Annotated[str, typer.Argument(help="Key prefix (default: all)")] = "",
    backend: _backend_option = None,
    base_url: _base_url_option = None,
    storage_root: _storage_root_option = None,
) -> None:
    with _require_backend(backend, base_url, storage_root) as b:
        try:
            entries = b.list(prefix)
        except CacheMoverError as e:
            typer.echo(f"error: {e}", err=True)
            raise typer.Exit(1)
    for e in entries:
        modified = e.last_modified.isoformat() if e.last_modified else "-"
        typer.echo(f"  {e.path}  {_format_size(e.size)}  {modified}")


@app.command("exists", help="Check whether a cache key exists (exit 1 if not)")
def exists_cmd(
    key: Annotated[str, typer.Argument(help="Cache key")],
    backend: _backend_option = None,
    base_url: _base_url_option = None,
    storage_root: _storage_root_option = None,
) -> None:
    with _require_backend(backend, base_url, storage_root) as b:
        try:
            found = b.exists(key)
        except CacheMoverError as e:
            typer.echo(f"error: {e}", err=True)
            raise typer.Exit(1)
    typer.echo("yes" if found else "no")
    if not found:
        raise typer.Exit(1)


# ------------------------- pack / unpack（仅本地） -------------------------


@app.command("pack", help="Write paths into a local archive file")
def pack_cmd(
    paths: Annotated[list[str], typer.Argument(help="Files or directories to archive")],
    output: Annotated[Optional[Path], typer.Option("--output", "-o", help="Archive file (default: cache + extension)")] = None,
    root: _root_option = None,
    fmt: Annotated[Optional[str], typer.Option("--format", "-F", help=f"Archive format: {' | '.join(FORMATS)} (default: from --output)")] = None,
    preserve_metadata: _preserve_option = False,
    skip_symlinks: _skip_symlinks_option = False,
) -> None:
    fmt = fmt or (_guess_format(output) if output is not None else TAR)
    out = output if output is not None else Path(f"cache{EXTENSIONS.get(fmt, '.tar')}")
    archive = _make_archive(root, fmt, preserve_metadata, skip_symlinks)
    try:
        with out.open("wb") as f:
            written = archive.create(paths, f)
    except (CacheMoverError, OSError) as e:
        typer.echo(f"error: {e}", err=True)
        raise typer.Exit(1)
    typer.echo(f"Packed {_format_size(written)} into {out}.")


@app.command("unpack", help="Extract a local archive file")
def unpack_cmd(
    archive_path: Annotated[Path, typer.Argument(help="Archive file")],
    dest: Annotated[Path, typer.Option("--dest", "-d", help="Destination directory (default: cwd)")] = Path("."),
    fmt: Annotated[Optional[str], typer.Option("--format", "-F", help=f"Archive format: {' | '.join(FORMATS)} (default: from file name)")] = None,
    preserve_metadata: _preserve_option = False,
) -> None:
    if not archive_path.is_file():
        typer.echo(f"error: not found: {archive_path}", err=True)
        raise typer.Exit(1)
    archive = _make_archive(str(dest), fmt or _guess_format(archive_path), preserve_metadata, False)
    try:
        with archive_path.open("rb") as f:
            report = archive.extract_with_report(str(dest), f)
    except (CacheMoverError, OSError) as e:
        typer.echo(f"error: {e}", err=True)
        raise typer.Exit(1)
    for advisory in report.advisories:
        typer.echo(f"  warning: {advisory}", err=True)
    typer.echo(f"Unpacked {_format_size(report.written)} into {dest}.")


# ------------------------- main -------------------------


def main() -> None:
    app()


if __name__ == "__main__":
    main()
