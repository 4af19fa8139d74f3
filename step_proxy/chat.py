"""Chat completion orchestration over ephemeral provider conversations.

Each request creates a fresh conversation, uploads referenced attachments,
sends one merged message as a single frame, transcodes the framed reply, and
then deletes the conversation in the background. The whole pipeline is retried
up to ``max_retries`` times with a fixed delay.
"""
from __future__ import annotations

import asyncio
import logging
import random
import re
import time
from contextlib import AsyncExitStack, asynccontextmanager
from typing import AsyncGenerator, AsyncIterator, Callable, Iterable, Optional, Sequence

import aiohttp

from .config import ProxySettings
from .events import parse_event
from .exceptions import AuthFailure, ProxyError, StreamDecodeError
from .frames import encode_json_frame, iter_payloads
from .leases import Lease, LeaseStore
from .provider import StepClient
from .schemas import ChatCompletionsResponse, ChatMessage, FilePart, ImagePart, TextPart
from .transcode import collect_completion, stream_completion
from .uploads import Attachment, AttachmentUploader

logger = logging.getLogger(__name__)

MODEL_NAME = "step"
CONVERSATION_NAME = "新会话"
FILE_FOCUS_INSTRUCTION = "关注用户最新发送文件和消息"
TEXT_FOCUS_INSTRUCTION = "关注用户最新的消息"

_INLINE_DATA_RE = re.compile(r"data:[\w.+-]+/[\w.+-]+(?:;[^,\s]*)?;base64,[A-Za-z0-9+/=]+")

RETRYABLE_ERRORS = (ProxyError, aiohttp.ClientError, asyncio.TimeoutError)


def split_tokens(authorization: str) -> list[str]:
    """Split a ``Bearer k1,k2`` header value into its refresh keys."""
    value = authorization.lstrip()
    if value[:7].lower() == "bearer ":
        value = value[7:]
    return [part.strip() for part in value.split(",") if part.strip()]


def pick_token(authorization: str) -> Optional[str]:
    tokens = split_tokens(authorization)
    return random.choice(tokens) if tokens else None


def extract_file_urls(messages: Iterable[ChatMessage]) -> list[str]:
    urls: list[str] = []
    for message in messages:
        if not isinstance(message.content, list):
            continue
        for part in message.content:
            if isinstance(part, FilePart):
                urls.append(part.file_url.url)
            elif isinstance(part, ImagePart):
                urls.append(part.image_url.url)
    return urls


def _message_text(message: ChatMessage) -> list[str]:
    if isinstance(message.content, str):
        return [_INLINE_DATA_RE.sub("", message.content)]
    texts = []
    for part in message.content:
        # file and image parts travel as attachments, never as text
        if isinstance(part, TextPart):
            texts.append(_INLINE_DATA_RE.sub("", part.text))
    return texts


def merge_messages(messages: Sequence[ChatMessage]) -> str:
    """Flatten a multi-turn history into the single message the provider accepts."""

    turns = list(messages)
    if len(turns) >= 2:
        latest = turns[-1]
        instruction = FILE_FOCUS_INSTRUCTION if latest.has_attachments() else TEXT_FOCUS_INSTRUCTION
        turns.insert(-1, ChatMessage(role="system", content=instruction))
    return "".join(f"{m.role}:{text}\n" for m in turns for text in _message_text(m))


def prepare_message(
    conversation_id: str,
    messages: Sequence[ChatMessage],
    attachments: Sequence[Attachment] = (),
) -> bytes:
    message_info: dict = {"text": merge_messages(messages)}
    if attachments:
        message_info["attachments"] = [a.to_wire() for a in attachments]
    return encode_json_frame({"chatId": conversation_id, "messageInfo": message_info})


class ConversationStream:
    """SSE line iterator that owns an open upstream response.

    ``aclose`` releases the response and schedules conversation removal exactly
    once, whether iteration finished, failed, or never started.
    """

    def __init__(self, lines: AsyncGenerator[str, None], stack: AsyncExitStack, on_close: Callable[[], None]) -> None:
        self._lines = lines
        self._stack = stack
        self._on_close = on_close
        self._started = time.monotonic()
        self._closed = False

    def __aiter__(self) -> "ConversationStream":
        return self

    async def __anext__(self) -> str:
        if self._closed:
            raise StopAsyncIteration
        try:
            return await self._lines.__anext__()
        except StopAsyncIteration:
            logger.info("Stream has completed transfer %dms", (time.monotonic() - self._started) * 1000)
            await self.aclose()
            raise
        except BaseException:
            await self.aclose()
            raise

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._lines.aclose()
        finally:
            # closing the stack releases the upstream connection
            try:
                await self._stack.aclose()
            finally:
                self._on_close()


class ChatService:
    def __init__(
        self,
        client: StepClient,
        leases: LeaseStore,
        uploader: AttachmentUploader,
        settings: Optional[ProxySettings] = None,
    ) -> None:
        self._client = client
        self._leases = leases
        self._uploader = uploader
        self._settings = settings or ProxySettings()
        self._background: set[asyncio.Task] = set()

    @asynccontextmanager
    async def _lease(self, refresh_key: str) -> AsyncIterator[Lease]:
        """Acquire a lease and evict it if the provider rejects it."""
        lease = await self._leases.acquire(refresh_key)
        try:
            yield lease
        except AuthFailure:
            self._leases.evict(refresh_key)
            raise

    async def create_conversation(self, refresh_key: str, name: str = CONVERSATION_NAME) -> str:
        async with self._lease(refresh_key) as lease:
            return await self._client.create_chat(lease, name)

    async def remove_conversation(self, conversation_id: str, refresh_key: str) -> None:
        async with self._lease(refresh_key) as lease:
            await self._client.delete_chat(lease, conversation_id)

    def _schedule_removal(self, conversation_id: str, refresh_key: str) -> None:
        task = asyncio.create_task(self.remove_conversation(conversation_id, refresh_key))
        self._background.add(task)

        def _done(t: asyncio.Task) -> None:
            self._background.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                logger.warning("Failed to remove conversation %s: %s", conversation_id, exc)

        task.add_done_callback(_done)

    async def drain(self) -> None:
        """Wait for pending background removals, used on shutdown."""
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    async def _upload_attachments(self, messages: Sequence[ChatMessage], refresh_key: str) -> list[Attachment]:
        urls = extract_file_urls(messages)
        if not urls:
            return []
        async with self._lease(refresh_key) as lease:
            return list(await asyncio.gather(*(self._uploader.upload(url, lease) for url in urls)))

    async def _open(
        self,
        stack: AsyncExitStack,
        messages: Sequence[ChatMessage],
        refresh_key: str,
    ) -> tuple[str, aiohttp.ClientResponse]:
        conversation_id = await self.create_conversation(refresh_key)
        try:
            attachments = await self._upload_attachments(messages, refresh_key)
            body = prepare_message(conversation_id, messages, attachments)
            lease = await self._leases.acquire(refresh_key)
            try:
                response = await stack.enter_async_context(
                    self._client.send_message(lease, conversation_id, body)
                )
            except AuthFailure:
                self._leases.evict(refresh_key)
                raise
        except BaseException:
            self._schedule_removal(conversation_id, refresh_key)
            raise
        return conversation_id, response

    def _events(self, response: aiohttp.ClientResponse):
        return iter_payloads(
            response.content.iter_any(), parse_event, max_frame_size=self._settings.max_frame_size
        )

    async def _retry_wait(self, attempt: int, exc: BaseException) -> bool:
        if isinstance(exc, StreamDecodeError) or attempt >= self._settings.max_retries:
            return False
        logger.error("Stream response error: %s", exc)
        logger.warning("Try again after %.1fs (attempt %d)", self._settings.retry_delay, attempt + 2)
        await asyncio.sleep(self._settings.retry_delay)
        return True

    async def create_completion(
        self,
        messages: Sequence[ChatMessage],
        refresh_key: str,
        model: str = MODEL_NAME,
    ) -> ChatCompletionsResponse:
        attempt = 0
        while True:
            try:
                async with AsyncExitStack() as stack:
                    conversation_id, response = await self._open(stack, messages, refresh_key)
                    started = time.monotonic()
                    try:
                        result = await collect_completion(self._events(response), model, conversation_id)
                    finally:
                        self._schedule_removal(conversation_id, refresh_key)
                    logger.info("Stream has completed transfer %dms", (time.monotonic() - started) * 1000)
                    return result
            except RETRYABLE_ERRORS as exc:
                if not await self._retry_wait(attempt, exc):
                    raise
                attempt += 1

    async def create_completion_stream(
        self,
        messages: Sequence[ChatMessage],
        refresh_key: str,
        model: str = MODEL_NAME,
    ) -> ConversationStream:
        """Open the upstream stream (with retries) and return an SSE line iterator.

        Setup failures raise here. Once the iterator is returned, failures are
        reported in-band and the conversation is removed when iteration ends or
        the consumer goes away.
        """
        attempt = 0
        while True:
            stack = AsyncExitStack()
            try:
                conversation_id, response = await self._open(stack, messages, refresh_key)
                break
            except RETRYABLE_ERRORS as exc:
                await stack.aclose()
                if not await self._retry_wait(attempt, exc):
                    raise
                attempt += 1
            except BaseException:
                await stack.aclose()
                raise

        return ConversationStream(
            stream_completion(self._events(response), model, conversation_id),
            stack,
            lambda: self._schedule_removal(conversation_id, refresh_key),
        )

    async def check_token(self, refresh_key: str) -> bool:
        """Report whether ``refresh_key`` still yields a usable lease."""
        try:
            async with self._lease(refresh_key) as lease:
                await self._client.get_user(lease)
        except RETRYABLE_ERRORS as exc:
            logger.info("Token check failed: %s", exc)
            return False
        return True
