"""Translate provider events into OpenAI chat completion payloads.

Two consumers share the same event variants: :func:`collect_completion` buffers
the whole answer into one ``chat.completion`` object, and
:func:`stream_completion` emits ``chat.completion.chunk`` SSE lines as events
arrive. Usage numbers are fixed placeholders; the provider stream carries no
token accounting.
"""
from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, AsyncIterator, Optional

from aiohttp import ClientError

from .events import DoneEvent, ErrorEvent, ProviderEvent, SearchEvent, TextEvent
from .exceptions import ProxyError
from .schemas import PLACEHOLDER_USAGE, ChatCompletionsResponse, ChatResponseMessage, Choice

logger = logging.getLogger(__name__)

DONE_MARKER = "data: [DONE]\n\n"
SEARCH_SUMMARY_HEADER = "搜索结果来自："


def format_error_notice(event: ErrorEvent) -> str:
    return f"服务暂时不可用，第三方响应错误：{event.code} {event.message}".rstrip()


class _StreamState:
    def __init__(self, response_id: str, model: str, created: Optional[int] = None) -> None:
        self.response_id = response_id
        self.model = model
        self.created = int(time.time()) if created is None else created
        self.finished = False

    def _format_event(self, data: dict[str, Any]) -> str:
        return f"data: {json.dumps(data, ensure_ascii=False)}\n\n"

    def chunk(
        self,
        delta: dict[str, Any],
        finish_reason: Optional[str] = None,
        *,
        with_usage: bool = False,
    ) -> str:
        data: dict[str, Any] = {
            "id": self.response_id,
            "model": self.model,
            "object": "chat.completion.chunk",
            "choices": [
                {
                    "index": 0,
                    "delta": delta,
                    "finish_reason": finish_reason,
                }
            ],
        }
        if with_usage:
            data["usage"] = PLACEHOLDER_USAGE.model_dump()
        data["created"] = self.created
        return self._format_event(data)

    def finish(self) -> Optional[str]:
        """Return the end marker exactly once."""
        if self.finished:
            return None
        self.finished = True
        return DONE_MARKER


async def _close(events: AsyncIterator[ProviderEvent]) -> None:
    aclose = getattr(events, "aclose", None)
    if aclose is not None:
        await aclose()


async def collect_completion(
    events: AsyncIterator[ProviderEvent],
    model: str,
    response_id: str,
    created: Optional[int] = None,
) -> ChatCompletionsResponse:
    content_buf: list[str] = []
    ref_buf: list[str] = []

    try:
        async for event in events:
            if isinstance(event, ErrorEvent):
                content_buf.append(format_error_notice(event))
            elif isinstance(event, SearchEvent):
                ref_buf.extend(f"{r.title}({r.url})\n" for r in event.results)
            elif isinstance(event, TextEvent):
                content_buf.append(event.text)
            elif isinstance(event, DoneEvent):
                if ref_buf:
                    refs = "".join(ref_buf)
                    if refs.endswith("\n"):
                        refs = refs[:-1]
                    content_buf.append(f"\n\n{SEARCH_SUMMARY_HEADER}\n{refs}")
                break
    finally:
        await _close(events)

    return ChatCompletionsResponse(
        id=response_id,
        model=model,
        choices=[
            Choice(
                index=0,
                message=ChatResponseMessage(role="assistant", content="".join(content_buf)),
                finish_reason="stop",
            )
        ],
        usage=PLACEHOLDER_USAGE,
        created=int(time.time()) if created is None else created,
    )


async def stream_completion(
    events: AsyncIterator[ProviderEvent],
    model: str,
    response_id: str,
    created: Optional[int] = None,
) -> AsyncIterator[str]:
    """Yield SSE lines for ``events``, always ending with the ``[DONE]`` marker.

    Failures raised while reading ``events`` after the opening chunk are turned
    into an in-band error chunk so the consumer still sees a well formed stream.
    """
    state = _StreamState(response_id, model, created)
    try:
        yield state.chunk({"role": "assistant", "content": ""})
        async for event in events:
            if isinstance(event, ErrorEvent):
                yield state.chunk({"content": format_error_notice(event)}, "stop")
                break
            if isinstance(event, SearchEvent):
                lines = "".join(f"检索 {r.title}({r.url}) ...\n" for r in event.results)
                yield state.chunk({"content": f"{lines}\n"})
            elif isinstance(event, TextEvent):
                yield state.chunk({"content": event.text})
            elif isinstance(event, DoneEvent):
                yield state.chunk({}, "stop", with_usage=True)
                break
    except (ProxyError, ClientError, asyncio.TimeoutError) as exc:
        logger.error("Stream response error: %s", exc)
        yield state.chunk({"content": f"Error: {exc}"}, "stop")
    finally:
        await _close(events)

    end = state.finish()
    if end:
        yield end
