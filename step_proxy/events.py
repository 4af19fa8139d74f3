"""Typed provider events parsed from decoded frame payloads."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional, Union


@dataclass(frozen=True)
class SearchResult:
    title: str
    url: str


@dataclass(frozen=True)
class ErrorEvent:
    code: str
    message: str


@dataclass(frozen=True)
class SearchEvent:
    results: tuple[SearchResult, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class TextEvent:
    text: str


@dataclass(frozen=True)
class DoneEvent:
    pass


ProviderEvent = Union[ErrorEvent, SearchEvent, TextEvent, DoneEvent]


def parse_event(data: Any) -> Optional[ProviderEvent]:
    """Map one payload object to an event, or ``None`` when nothing is recognised."""

    if not isinstance(data, dict):
        return None

    err = data.get("error")
    if isinstance(err, dict):
        return ErrorEvent(code=str(err.get("code") or ""), message=str(err.get("message") or ""))

    pipeline = data.get("pipelineEvent")
    if isinstance(pipeline, dict):
        search = pipeline.get("eventSearch")
        if isinstance(search, dict) and isinstance(search.get("results"), list):
            results = tuple(
                SearchResult(title=str(r.get("title") or ""), url=str(r.get("url") or ""))
                for r in search["results"]
                if isinstance(r, dict)
            )
            return SearchEvent(results=results)

    text_event = data.get("textEvent")
    if isinstance(text_event, dict):
        text = text_event.get("text")
        if isinstance(text, str) and text:
            return TextEvent(text=text)

    if "doneEvent" in data:
        return DoneEvent()

    return None
