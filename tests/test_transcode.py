import asyncio
import json

from aiohttp import ClientPayloadError

from step_proxy.events import DoneEvent, ErrorEvent, SearchEvent, SearchResult, TextEvent
from step_proxy.transcode import DONE_MARKER, collect_completion, stream_completion


async def _events(items, error=None):
    for item in items:
        yield item
    if error is not None:
        raise error


def _buffered(items):
    return asyncio.run(collect_completion(_events(items), "step", "chat-1", created=1700000000))


def _streamed(items, error=None):
    async def run():
        return [line async for line in stream_completion(_events(items, error), "step", "chat-1", created=1700000000)]

    return asyncio.run(run())


def _chunk(line: str) -> dict:
    assert line.startswith("data: ") and line.endswith("\n\n")
    return json.loads(line[6:])


def test_simple_reply_buffered():
    result = _buffered([TextEvent("Hi"), DoneEvent()])
    body = result.model_dump()
    assert body["object"] == "chat.completion"
    assert body["id"] == "chat-1"
    assert body["choices"][0]["message"] == {"role": "assistant", "content": "Hi"}
    assert body["choices"][0]["finish_reason"] == "stop"
    assert body["usage"] == {"prompt_tokens": 1, "completion_tokens": 1, "total_tokens": 2}


def test_simple_reply_streamed():
    lines = _streamed([TextEvent("Hi"), DoneEvent()])
    assert len(lines) == 4
    opening, delta, terminal = (_chunk(line) for line in lines[:3])
    assert opening["choices"][0]["delta"] == {"role": "assistant", "content": ""}
    assert opening["choices"][0]["finish_reason"] is None
    assert delta["object"] == "chat.completion.chunk"
    assert delta["choices"][0]["delta"] == {"content": "Hi"}
    assert terminal["choices"][0]["delta"] == {}
    assert terminal["choices"][0]["finish_reason"] == "stop"
    assert terminal["usage"]["total_tokens"] == 2
    assert lines[3] == DONE_MARKER


def test_search_results_appended_after_answer():
    search = SearchEvent((SearchResult("A", "http://a"),))
    result = _buffered([search, TextEvent("ans"), DoneEvent()])
    assert result.choices[0].message.content == "ans\n\n搜索结果来自：\nA(http://a)"


def test_search_results_accumulate_across_events():
    events = [
        SearchEvent((SearchResult("A", "http://a"),)),
        SearchEvent((SearchResult("B", "http://b"),)),
        TextEvent("x"),
        DoneEvent(),
    ]
    content = _buffered(events).choices[0].message.content
    assert content.endswith("搜索结果来自：\nA(http://a)\nB(http://b)")


def test_search_results_streamed_before_text():
    search = SearchEvent((SearchResult("A", "http://a"),))
    lines = _streamed([search, TextEvent("ans"), DoneEvent()])
    contents = [_chunk(line)["choices"][0]["delta"].get("content") for line in lines[1:3]]
    assert contents == ["检索 A(http://a) ...\n\n", "ans"]


def test_error_event_buffered_continues():
    result = _buffered([ErrorEvent("internal", "busy"), TextEvent("later"), DoneEvent()])
    assert result.choices[0].message.content == "服务暂时不可用，第三方响应错误：internal busylater"


def test_error_event_streamed_terminates():
    lines = _streamed([TextEvent("a"), ErrorEvent("internal", "busy"), TextEvent("ignored"), DoneEvent()])
    assert lines[-1] == DONE_MARKER
    last = _chunk(lines[-2])
    assert last["choices"][0]["finish_reason"] == "stop"
    assert "busy" in last["choices"][0]["delta"]["content"]
    assert all("ignored" not in line for line in lines)


def test_stream_closed_without_done_still_ends_with_marker():
    lines = _streamed([TextEvent("partial")])
    assert lines[-1] == DONE_MARKER
    assert lines.count(DONE_MARKER) == 1


def test_mid_stream_failure_becomes_in_band_error():
    lines = _streamed([TextEvent("partial")], error=ClientPayloadError("connection reset"))
    assert lines[-1] == DONE_MARKER
    err = _chunk(lines[-2])
    assert err["choices"][0]["finish_reason"] == "stop"
    assert err["choices"][0]["delta"]["content"].startswith("Error:")


def test_output_is_deterministic():
    events = [SearchEvent((SearchResult("A", "http://a"),)), TextEvent("ans"), DoneEvent()]
    assert _streamed(events) == _streamed(events)
    assert _buffered(events).model_dump_json() == _buffered(events).model_dump_json()


def test_closing_consumer_stops_output():
    async def run():
        gen = stream_completion(_events([TextEvent("a"), TextEvent("b"), DoneEvent()]), "step", "c", created=1)
        first = await gen.__anext__()
        await gen.aclose()
        return first

    first = asyncio.run(run())
    assert _chunk(first)["choices"][0]["delta"]["role"] == "assistant"
