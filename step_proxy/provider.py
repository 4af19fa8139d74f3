"""aiohttp client for the Step chat web API."""
from __future__ import annotations

import json
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional
from urllib.parse import quote

import aiohttp

from .config import ProxySettings
from .exceptions import AuthFailure, FileExceedsSize, FileURLInvalid, UpstreamRequestFailed
from .leases import Lease, LeaseGrant

logger = logging.getLogger(__name__)

FAKE_HEADERS = {
    "Accept": "*/*",
    "Accept-Encoding": "gzip, deflate, br, zstd",
    "Accept-Language": "zh-CN,zh;q=0.9",
    "Connect-Protocol-Version": "1",
    "Oasis-Appid": "10200",
    "Oasis-Platform": "web",
    "Sec-Ch-Ua": '"Chromium";v="122", "Not(A:Brand";v="24", "Google Chrome";v="122"',
    "Sec-Ch-Ua-Mobile": "?0",
    "Sec-Ch-Ua-Platform": '"Windows"',
    "Sec-Fetch-Dest": "empty",
    "Sec-Fetch-Mode": "cors",
    "Sec-Fetch-Site": "same-origin",
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36",
}

# One web id per process, mirroring a single browser tab.
_WEB_ID = uuid.uuid4().hex


def _cookie(lease: Lease) -> str:
    return f"Oasis-Token={lease.token}; Oasis-Webid={lease.device_id}"


def check_result(data: Any) -> Any:
    """Raise when ``data`` is a provider error body, otherwise return it.

    Errors carry a string ``code``; ``unauthenticated`` maps to AuthFailure.
    """
    if not isinstance(data, dict):
        return data
    code = data.get("code")
    if not isinstance(code, str):
        return data
    message = data.get("message") or code
    if code == "unauthenticated":
        raise AuthFailure(f"[请求step失败]: {message}")
    raise UpstreamRequestFailed(f"[请求step失败]: {message}")


def _parse_body(body: str) -> Any:
    if not body.strip():
        return None
    try:
        return json.loads(body)
    except json.JSONDecodeError:
        return None


class StepClient:
    """Thin wrapper around the provider endpoints used by the chat service."""

    def __init__(self, session: aiohttp.ClientSession, settings: Optional[ProxySettings] = None) -> None:
        self._session = session
        self._settings = settings or ProxySettings()
        self._base_url = self._settings.base_url.rstrip("/")

    @property
    def session(self) -> aiohttp.ClientSession:
        return self._session

    def _headers(self, referer: str, lease: Optional[Lease] = None, **extra: str) -> dict[str, str]:
        headers = {
            **FAKE_HEADERS,
            "Origin": self._base_url,
            "Referer": f"{self._base_url}{referer}",
            "Oasis-Webid": lease.device_id if lease else _WEB_ID,
        }
        if lease is not None:
            headers["Cookie"] = _cookie(lease)
        headers.update(extra)
        return headers

    async def _post_json(self, path: str, payload: dict[str, Any], headers: dict[str, str]) -> Any:
        timeout = aiohttp.ClientTimeout(total=self._settings.request_timeout)
        async with self._session.post(
            f"{self._base_url}{path}", json=payload, headers=headers, timeout=timeout
        ) as response:
            body = await response.text()
        data = _parse_body(body)
        if data is None and response.status >= 400:
            raise UpstreamRequestFailed(f"[请求step失败]: HTTP {response.status}")
        return check_result(data)

    async def register_device(self, refresh_key: str) -> LeaseGrant:
        headers = self._headers("/chats/new", Cookie=f"Oasis-Token={refresh_key}")
        data = await self._post_json(
            "/passport/proto.api.passport.v1.PassportService/RegisterDevice", {}, headers
        )
        try:
            return LeaseGrant(
                device_id=data["device"]["deviceID"],
                access_raw=data["accessToken"]["raw"],
                refresh_raw=data["refreshToken"]["raw"],
            )
        except (KeyError, TypeError) as exc:
            raise UpstreamRequestFailed(f"[请求step失败]: malformed device registration: {exc}") from exc

    async def create_chat(self, lease: Lease, name: str) -> str:
        data = await self._post_json(
            "/api/proto.chat.v1.ChatService/CreateChat",
            {"chatName": name},
            self._headers("/chats/new", lease),
        )
        chat_id = data.get("chatId") if isinstance(data, dict) else None
        if not chat_id:
            raise UpstreamRequestFailed("[请求step失败]: CreateChat returned no chatId")
        return chat_id

    async def delete_chat(self, lease: Lease, chat_id: str) -> None:
        await self._post_json(
            "/api/proto.chat.v1.ChatService/DelChat",
            {"chatIds": [chat_id]},
            self._headers(f"/chats/{chat_id}", lease),
        )

    async def get_user(self, lease: Lease) -> Any:
        return await self._post_json(
            "/api/proto.user.v1.UserService/GetUser", {}, self._headers("/chats/new", lease)
        )

    @asynccontextmanager
    async def send_message(self, lease: Lease, chat_id: str, body: bytes) -> AsyncIterator[aiohttp.ClientResponse]:
        """Open the streaming send call; the response body is a frame stream."""
        headers = self._headers(
            f"/chats/{chat_id}", lease, **{"Content-Type": "application/connect+json"}
        )
        timeout = aiohttp.ClientTimeout(total=self._settings.stream_timeout)
        async with self._session.post(
            f"{self._base_url}/api/proto.chat.v1.ChatMessageService/SendMessageStream",
            data=body,
            headers=headers,
            timeout=timeout,
        ) as response:
            if response.status >= 400:
                text = await response.text()
                check_result(_parse_body(text))
                raise UpstreamRequestFailed(f"[请求step失败]: HTTP {response.status}")
            yield response

    async def upload_file(self, lease: Lease, name: str, data: bytes, mime_type: str) -> dict[str, Any]:
        headers = self._headers("/chats/new", lease, **{"Content-Type": mime_type})
        timeout = aiohttp.ClientTimeout(total=self._settings.stream_timeout)
        async with self._session.put(
            f"{self._base_url}/api/storage?file_name={quote(name)}",
            data=data,
            headers=headers,
            timeout=timeout,
        ) as response:
            body = await response.text()
        result = check_result(_parse_body(body))
        if not isinstance(result, dict) or not result.get("id"):
            raise UpstreamRequestFailed(f"[请求step失败]: upload returned HTTP {response.status} without id")
        return result

    async def get_file_status(self, lease: Lease, file_id: str) -> dict[str, Any]:
        data = await self._post_json(
            "/api/proto.file.v1.FileService/GetFileStatus",
            {"id": file_id},
            self._headers("/chats/new", lease),
        )
        if not isinstance(data, dict):
            raise UpstreamRequestFailed("[请求step失败]: malformed file status")
        return data

    async def probe(self, url: str) -> Optional[int]:
        """Return the declared content length of ``url``; raise when unreachable."""
        timeout = aiohttp.ClientTimeout(total=self._settings.request_timeout)
        try:
            async with self._session.head(url, allow_redirects=True, timeout=timeout) as response:
                status = response.status
                length = response.content_length
        except aiohttp.ClientError as exc:
            raise FileURLInvalid(f"File {url} is not valid: {exc}") from exc
        if status < 200 or status >= 300:
            raise FileURLInvalid(f"File {url} is not valid: [{status}]")
        return length

    async def download(self, url: str, limit: int) -> tuple[bytes, Optional[str]]:
        """Fetch ``url`` fully into memory, refusing bodies larger than ``limit``."""
        timeout = aiohttp.ClientTimeout(total=self._settings.stream_timeout)
        buf = bytearray()
        async with self._session.get(url, timeout=timeout) as response:
            if response.status < 200 or response.status >= 300:
                raise FileURLInvalid(f"File {url} is not valid: [{response.status}]")
            async for chunk in response.content.iter_chunked(64 * 1024):
                buf.extend(chunk)
                if len(buf) > limit:
                    raise FileExceedsSize(f"File {url} exceeds {limit} bytes")
            content_type = response.headers.get("Content-Type")
        return bytes(buf), content_type
