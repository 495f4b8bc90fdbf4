"""
HFS (HTTP File Server) 客户端，作为缓存归档的对象存储。

基于 https://github.com/rejetto/hfs 的 OpenAPI 与前端行为实现：
会话登录（?login=）、带防 CSRF 头的流式 PUT 上传、流式 GET 下载、目录列表与删除。
"""

from __future__ import annotations

from typing import Any, BinaryIO, Iterator
from urllib.parse import quote, urlencode

import httpx

from cachemover.models import DirEntry


def _path_for_url(path: str) -> str:
    """将路径按段做 UTF-8 百分号编码，供 URL 使用（避免中文等非 ASCII 导致 ascii codec 错误）。"""
    segments = (path.strip("/").split("/") if path.strip("/") else [])
    return "/" + "/".join(quote(seg, safe="") for seg in segments) if segments else "/"


# POST/PUT 请求需携带的防 CSRF 头（HFS OpenAPI 要求）
HFS_ANTI_CSRF_HEADER = "x-hfs-anti-csrf"
HFS_ANTI_CSRF_VALUE = "1"


class HFSClient:
    """
    HFS 服务器 API 客户端。

    认证方式：首次请求带 ?login=用户名:密码 建立会话，之后的请求复用同一会话。
    """

    UPLOAD_CHUNK_SIZE = 1024 * 1024  # 1 MiB，流式上传块大小，避免整文件读入内存
    DOWNLOAD_CHUNK_SIZE = 1024 * 1024

    def __init__(
        self,
        base_url: str,
        username: str | None = None,
        password: str | None = None,
        *,
        timeout: float = 30.0,
        verify: bool = True,
        transport: httpx.BaseTransport | None = None,
    ):
        """
        :param base_url: 服务器根地址，如 http://127.0.0.1:8280（不要带末尾 /data/）
        :param username: 登录用户名
        :param password: 登录密码
        :param timeout: 请求超时秒数
        :param verify: 是否验证 HTTPS 证书
        :param transport: 自定义 httpx transport（测试时可传 httpx.MockTransport）
        """
        self.base_url = base_url.rstrip("/")
        self.username = username
        self.password = password
        self.timeout = timeout
        self.verify = verify
        self._transport = transport
        self._api_base = f"{self.base_url}/~/api"
        self._client: httpx.Client | None = None

    def _get_client(self) -> httpx.Client:
        if self._client is None or self._client.is_closed:
            # 只用 session（?login=）认证，不用 Basic，保证 /~/api/* 与上传行为一致
            self._client = httpx.Client(
                base_url=self.base_url,
                auth=None,
                timeout=self.timeout,
                verify=self.verify,
                follow_redirects=True,
                transport=self._transport,
            )
            if self.username is not None and self.password is not None:
                login_value = f"{self.username}:{self.password}"
                self._client.get(f"/?{urlencode({'login': login_value})}")
        return self._client

    def _post_headers(self) -> dict[str, str]:
        return {HFS_ANTI_CSRF_HEADER: HFS_ANTI_CSRF_VALUE}

    def close(self) -> None:
        """关闭底层 HTTP 客户端。"""
        if self._client and not self._client.is_closed:
            self._client.close()
            self._client = None

    def __enter__(self) -> HFSClient:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def get_resource_url(self, path: str) -> str:
        """返回指定路径对应的完整 URL，如 "http://127.0.0.1:8280/cache/key.tar"。"""
        return self.base_url + _path_for_url(path.strip("/"))

    # ------------------------- 登录与会话 -------------------------

    def login(self) -> bool:
        """
        使用 URL 参数方式建立登录会话（可选，_get_client 首次创建时已自动登录）。
        返回是否请求成功（不保证服务端一定接受凭证）。
        """
        if self.username is None or self.password is None:
            return False
        login_value = f"{self.username}:{self.password}"
        url = f"{self.base_url}/?{urlencode({'login': login_value})}"
        try:
            r = self._get_client().get(url)
            return r.is_success
        except httpx.HTTPError:
            return False

    # ------------------------- 文件列表 -------------------------

    def get_file_list(
        self,
        uri: str = "/",
        *,
        offset: int | None = None,
        limit: int | None = None,
        search: str | None = None,
        request_c_and_m: bool = False,
    ) -> dict[str, Any]:
        """
        获取指定目录下的文件/文件夹列表。

        :param uri: 目录路径，如 "/" 或 "/data"
        :param offset: 跳过条数
        :param limit: 最多返回条数
        :param search: 搜索关键词（含子目录）
        :param request_c_and_m: 是否同时请求 c（创建）和 m（修改）时间
        :return: 含 can_upload, can_delete, list 等字段
        :raises httpx.HTTPStatusError: 目录不存在（404）或无权限
        """
        params: dict[str, Any] = {"uri": uri}
        if offset is not None:
            params["offset"] = offset
        if limit is not None:
            params["limit"] = limit
        if search:
            params["search"] = search
        if request_c_and_m:
            params["c"] = "1"
        r = self._get_client().get(f"{self._api_base}/get_file_list", params=params)
        r.raise_for_status()
        return r.json()

    def list_entries(self, uri: str = "/", **kwargs: Any) -> list[DirEntry]:
        """便捷方法：只返回 get_file_list 的 list 数组。"""
        data = self.get_file_list(uri, **kwargs)
        return data.get("list", [])

    # ------------------------- 下载 -------------------------

    def download_to(self, path: str, writer: BinaryIO) -> int:
        """
        流式下载文件并写入 writer，不整文件读入内存。

        :param path: 远程路径，如 "cache/repo/key.tar"
        :param writer: 可写的字节流
        :return: 写入的字节数
        :raises httpx.HTTPStatusError: 文件不存在（404）或无权限
        """
        url = _path_for_url(path)
        written = 0
        with self._get_client().stream("GET", url) as r:
            r.raise_for_status()
            for chunk in r.iter_bytes(self.DOWNLOAD_CHUNK_SIZE):
                writer.write(chunk)
                written += len(chunk)
        return written

    # ------------------------- 上传 -------------------------

    def _upload_body_and_headers(
        self, file_content: BinaryIO | bytes, referer: str
    ) -> tuple[bytes | Iterator[bytes], dict[str, str], bool]:
        """生成 PUT body 与 headers；若为可 seek 的文件对象则流式（迭代器 + Content-Length），否则整块读入。"""
        headers = {**self._post_headers(), "Referer": referer}
        if isinstance(file_content, bytes):
            headers["Content-Length"] = str(len(file_content))
            return file_content, headers, False
        try:
            file_content.seek(0, 2)
            size = file_content.tell()
            file_content.seek(0)
        except (AttributeError, OSError):
            body = file_content.read()
            headers["Content-Length"] = str(len(body))
            return body, headers, False

        def stream_chunks() -> Iterator[bytes]:
            while True:
                chunk = file_content.read(self.UPLOAD_CHUNK_SIZE)
                if not chunk:
                    break
                yield chunk

        headers["Content-Length"] = str(size)
        return stream_chunks(), headers, True

    def upload_file(self, folder: str, filename: str, file_content: BinaryIO | bytes) -> httpx.Response:
        """
        以 PUT /{folder}/{filename}?resume=0! 上传文件，已存在时覆盖。

        filename 可含子路径（如 "repo/key.tar"），中间目录由服务端自动创建。

        :param folder: 远程目录，如 "" 或 "cache"
        :param filename: 文件名（可含子路径）
        :param file_content: 文件内容（文件对象或 bytes）；文件对象支持 seek 时流式上传
        :return: 响应对象，可检查 .status_code
        """
        folder = folder.strip("/")
        filename = filename.strip("/")
        put_params = {"resume": "0!"}
        path = f"{folder}/{filename}" if folder else filename
        url = f"{_path_for_url(path)}?{urlencode(put_params)}"
        referer = f"{self.base_url}{_path_for_url(folder)}/" if folder else f"{self.base_url}/"
        body, headers, is_stream = self._upload_body_and_headers(file_content, referer)
        client = self._get_client()
        if folder:
            client.get(f"{_path_for_url(folder)}/")
        r = client.put(url, content=body, headers=headers)
        # HFS roots：若 host 映射到 root（如 /data），需发 PUT /filename 相对 root
        if r.status_code == 404 and folder:
            url_rel = f"{_path_for_url(filename)}?{urlencode(put_params)}"
            if is_stream and hasattr(file_content, "seek"):
                file_content.seek(0)
                body, headers, _ = self._upload_body_and_headers(file_content, referer)
            r = client.put(url_rel, content=body, headers=headers)
        return r

    # ------------------------- 删除 -------------------------

    def delete_file(self, folder: str, filename: str) -> httpx.Response:
        """
        删除指定目录下的文件（对文件路径发 DELETE）；需当前用户有 can_delete 权限。

        :param folder: 目录路径，如 "cache"
        :param filename: 文件名（可含子路径）
        :return: 响应对象，可检查 .status_code
        """
        folder = folder.strip("/")
        path = f"{folder}/{filename.strip('/')}" if folder else filename
        return self._get_client().delete(_path_for_url(path))
