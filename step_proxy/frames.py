"""Length-prefixed binary framing used by the provider's streaming endpoint.

Each frame is ``flag:uint8`` + ``length:uint32 big-endian`` + ``payload``. Frames
may be split or packed across transport reads in any way, so the decoder keeps
its own accumulation buffer and never assumes read alignment.
"""
from __future__ import annotations

import json
import logging
import struct
from typing import Any, AsyncIterator, Callable, NamedTuple, Optional, TypeVar

from .exceptions import StreamDecodeError

logger = logging.getLogger(__name__)

HEADER_SIZE = 5
_HEADER = struct.Struct(">BI")

T = TypeVar("T")


class Frame(NamedTuple):
    flag: int
    payload: bytes


def encode_frame(payload: bytes, flag: int = 0x00) -> bytes:
    return _HEADER.pack(flag, len(payload)) + payload


def encode_json_frame(obj: Any, flag: int = 0x00) -> bytes:
    return encode_frame(json.dumps(obj, ensure_ascii=False, separators=(",", ":")).encode("utf-8"), flag)


class FrameDecoder:
    """Incremental frame reassembly over arbitrary chunk boundaries."""

    def __init__(self, max_frame_size: int = 16 * 1024 * 1024) -> None:
        self._buffer = bytearray()
        self._max_frame_size = max_frame_size

    @property
    def pending(self) -> int:
        """Number of buffered bytes not yet emitted as a frame."""
        return len(self._buffer)

    def feed(self, chunk: bytes) -> list[Frame]:
        if chunk:
            self._buffer.extend(chunk)
        frames: list[Frame] = []
        while len(self._buffer) >= HEADER_SIZE:
            flag, length = _HEADER.unpack_from(self._buffer, 0)
            if length > self._max_frame_size:
                raise StreamDecodeError(
                    f"Stream response invalid: frame length {length} exceeds {self._max_frame_size}"
                )
            end = HEADER_SIZE + length
            if len(self._buffer) < end:
                break
            payload = bytes(self._buffer[HEADER_SIZE:end])
            del self._buffer[:end]
            if flag != 0x00:
                logger.warning("Received frame with unexpected flag 0x%02x (%d bytes)", flag, length)
            frames.append(Frame(flag, payload))
        return frames

    def reset(self) -> None:
        self._buffer.clear()


async def iter_frames(
    byte_iter: AsyncIterator[bytes],
    *,
    max_frame_size: int = 16 * 1024 * 1024,
) -> AsyncIterator[Frame]:
    """Yield complete frames, in arrival order, until the byte stream closes."""
    decoder = FrameDecoder(max_frame_size)
    try:
        async for chunk in byte_iter:
            for frame in decoder.feed(chunk):
                yield frame
        if decoder.pending:
            logger.warning("Stream closed with %d undecoded trailing bytes", decoder.pending)
    finally:
        decoder.reset()


def decode_payload(payload: bytes) -> Any:
    try:
        return json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise StreamDecodeError(f"Stream response invalid: {exc}") from exc


async def iter_payloads(
    byte_iter: AsyncIterator[bytes],
    parse: Callable[[Any], Optional[T]],
    *,
    max_frame_size: int = 16 * 1024 * 1024,
) -> AsyncIterator[T]:
    """Decode each frame payload as JSON and hand it to ``parse``.

    ``parse`` may return ``None`` to skip a payload it does not recognise. A
    payload that is not valid UTF-8 JSON raises :class:`StreamDecodeError` and
    ends the stream.
    """
    async for frame in iter_frames(byte_iter, max_frame_size=max_frame_size):
        item = parse(decode_payload(frame.payload))
        if item is not None:
            yield item
