"""Attachment upload: validate, transfer, then poll until the provider is done."""
from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import mimetypes
import posixpath
import re
import time
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import unquote, urlparse

from .config import ProxySettings
from .exceptions import FileExceedsSize, FileUploadFailed, FileUploadTimeout, FileURLInvalid
from .leases import Lease
from .provider import StepClient

logger = logging.getLogger(__name__)

_DATA_URI_RE = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+)?(?:;[^,]*)?;base64,(?P<data>.*)$", re.DOTALL)
DEFAULT_MIME_TYPE = "application/octet-stream"


@dataclass(frozen=True)
class Attachment:
    id: str
    mime_type: str
    name: str
    size: int
    width: Optional[int] = None
    height: Optional[int] = None

    def to_wire(self) -> dict[str, Any]:
        return {
            "attachmentType": self.mime_type,
            "attachmentId": self.id,
            "name": self.name,
            "width": "" if self.width is None else str(self.width),
            "height": "" if self.height is None else str(self.height),
            "size": str(self.size),
        }


def is_inline(url: str) -> bool:
    return url.startswith("data:") and ";base64," in url[:256]


def decode_inline(url: str) -> tuple[bytes, str]:
    m = _DATA_URI_RE.match(url)
    if not m:
        raise FileURLInvalid("Inline file payload is not a base64 data URI")
    try:
        data = base64.b64decode(m.group("data"), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise FileURLInvalid(f"Inline file payload is not valid base64: {exc}") from exc
    return data, m.group("mime") or DEFAULT_MIME_TYPE


def _name_for(url: str, mime_type: str) -> str:
    if not is_inline(url):
        name = posixpath.basename(unquote(urlparse(url).path))
        if name:
            return name
    return f"{uuid.uuid4().hex}{mimetypes.guess_extension(mime_type) or ''}"


def _dimension(value: Any) -> Optional[int]:
    try:
        return int(value) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None


class AttachmentUploader:
    def __init__(
        self,
        client: StepClient,
        settings: Optional[ProxySettings] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._client = client
        self._settings = settings or ProxySettings()
        self._clock = clock
        self._sleep = sleep

    async def upload(self, source_url: str, lease: Lease) -> Attachment:
        max_size = self._settings.file_max_size

        if is_inline(source_url):
            data, mime_type = decode_inline(source_url)
        else:
            declared = await self._client.probe(source_url)
            if declared is not None and declared > max_size:
                raise FileExceedsSize(f"File {source_url} exceeds {max_size} bytes")
            data, content_type = await self._client.download(source_url, max_size)
            guessed, _ = mimetypes.guess_type(urlparse(source_url).path)
            header_type = (content_type or "").split(";")[0].strip()
            mime_type = guessed or header_type or DEFAULT_MIME_TYPE

        if len(data) > max_size:
            raise FileExceedsSize(f"File exceeds {max_size} bytes")

        name = _name_for(source_url, mime_type)
        stored = await self._client.upload_file(lease, name, data, mime_type)
        file_id = str(stored["id"])
        logger.info("Uploaded %s (%d bytes, %s) as %s", name, len(data), mime_type, file_id)

        status = await self._wait_until_ready(lease, file_id)
        return Attachment(
            id=file_id,
            mime_type=mime_type,
            name=name,
            size=len(data),
            width=_dimension(status.get("width", stored.get("width"))),
            height=_dimension(status.get("height", stored.get("height"))),
        )

    async def _wait_until_ready(self, lease: Lease, file_id: str) -> dict[str, Any]:
        failures = self._settings.file_failure_statuses
        started = self._clock()
        while True:
            if self._clock() - started > self._settings.upload_timeout:
                raise FileUploadTimeout(f"File {file_id} processing timed out")
            status = await self._client.get_file_status(lease, file_id)
            file_status = status.get("fileStatus")
            if file_status in failures:
                raise FileUploadFailed(f"File {file_id} processing failed with status {file_status}")
            if not status.get("needFurtherCall"):
                break
            await self._sleep(self._settings.upload_poll_interval)

        await self._sleep(self._settings.upload_settle_delay)
        return status
