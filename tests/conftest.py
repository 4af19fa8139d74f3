"""Shared fakes for the proxy tests.

The fake provider client mirrors ``StepClient``'s coroutine surface so the real
lease store, uploader and chat service can run against it in-process.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Optional

import pytest

from step_proxy.chat import ChatService
from step_proxy.config import ProxySettings
from step_proxy.frames import encode_json_frame
from step_proxy.leases import LeaseGrant, LeaseStore
from step_proxy.uploads import AttachmentUploader


def frame(obj: Any) -> bytes:
    return encode_json_frame(obj)


def split_every(data: bytes, size: int) -> list[bytes]:
    return [data[i : i + size] for i in range(0, len(data), size)]


async def aiter_chunks(chunks):
    for chunk in chunks:
        yield chunk


async def no_sleep(_seconds: float) -> None:
    return None


class FakeContent:
    def __init__(self, chunks: list[bytes], error: Optional[BaseException] = None) -> None:
        self._chunks = chunks
        self._error = error

    async def iter_any(self):
        for chunk in self._chunks:
            yield chunk
        if self._error is not None:
            raise self._error


class FakeResponse:
    status = 200

    def __init__(self, chunks: list[bytes], error: Optional[BaseException] = None) -> None:
        self.content = FakeContent(chunks, error)


class FakeStepClient:
    def __init__(self, stream: bytes = b"", chunk_size: int = 7) -> None:
        self.stream = stream
        self.chunk_size = chunk_size
        self.stream_error: Optional[BaseException] = None
        self.registrations = 0
        self.registration_error: Optional[BaseException] = None
        self.created: list[str] = []
        self.create_errors: list[BaseException] = []
        self.send_errors: list[BaseException] = []
        self.sent: list[tuple[Any, str, bytes]] = []
        self.released = 0
        self.deleted: list[str] = []
        self.delete_error: Optional[BaseException] = None
        self.user_error: Optional[BaseException] = None
        self.uploads: list[tuple[str, bytes, str]] = []
        self.status_replies: list[dict[str, Any]] = [{"fileStatus": 10, "needFurtherCall": False}]

    async def register_device(self, refresh_key: str) -> LeaseGrant:
        self.registrations += 1
        if self.registration_error is not None:
            raise self.registration_error
        n = self.registrations
        return LeaseGrant(device_id=f"dev-{n}", access_raw=f"acc-{n}", refresh_raw=f"ref-{n}")

    async def create_chat(self, lease, name: str) -> str:
        if self.create_errors:
            raise self.create_errors.pop(0)
        chat_id = f"chat-{len(self.created) + 1}"
        self.created.append(chat_id)
        return chat_id

    async def delete_chat(self, lease, chat_id: str) -> None:
        if self.delete_error is not None:
            raise self.delete_error
        self.deleted.append(chat_id)

    async def get_user(self, lease) -> dict[str, Any]:
        if self.user_error is not None:
            raise self.user_error
        return {"user": {"id": "u1"}}

    @asynccontextmanager
    async def send_message(self, lease, chat_id: str, body: bytes):
        self.sent.append((lease, chat_id, body))
        if self.send_errors:
            raise self.send_errors.pop(0)
        try:
            yield FakeResponse(split_every(self.stream, self.chunk_size), self.stream_error)
        finally:
            self.released += 1

    async def probe(self, url: str) -> Optional[int]:
        return 4

    async def download(self, url: str, limit: int) -> tuple[bytes, Optional[str]]:
        return b"abcd", "image/png"

    async def upload_file(self, lease, name: str, data: bytes, mime_type: str) -> dict[str, Any]:
        self.uploads.append((name, data, mime_type))
        return {"id": f"file-{len(self.uploads)}"}

    async def get_file_status(self, lease, file_id: str) -> dict[str, Any]:
        if len(self.status_replies) > 1:
            return self.status_replies.pop(0)
        return self.status_replies[0]


def build_service(client: FakeStepClient, **overrides: Any) -> ChatService:
    settings = ProxySettings(retry_delay=0.0, upload_settle_delay=0.0, **overrides)
    leases = LeaseStore(client.register_device, ttl=settings.lease_ttl)
    uploader = AttachmentUploader(client, settings, sleep=no_sleep)
    return ChatService(client, leases, uploader, settings)


@pytest.fixture()
def simple_stream() -> bytes:
    return frame({"textEvent": {"text": "Hi"}}) + frame({"doneEvent": {}})
