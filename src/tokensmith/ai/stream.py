"""Newline-delimited JSON decoding for the execution stream."""

from __future__ import annotations

import codecs
import json
import logging
import re
from collections.abc import AsyncGenerator, AsyncIterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from .errors import ExecutionError

__all__ = ["NdjsonDecoder", "StreamEvent", "decode_event", "iter_events"]

LOGGER = logging.getLogger(__name__)

_TERMINAL_HINT = re.compile(r'"type"\s*:\s*"(result|error)"')


@dataclass(slots=True, frozen=True)
class StreamEvent:
    type: str
    payload: Mapping[str, Any] = field(default_factory=dict)

    def get(self, key: str, default: Any = None) -> Any:
        return self.payload.get(key, default)


class NdjsonDecoder:
    """Split a byte stream into complete text lines.

    Bytes are decoded incrementally so a multi-byte character split across
    reads is reassembled; the trailing partial line is buffered until the
    next :meth:`feed` or :meth:`flush`.
    """

    def __init__(self, encoding: str = "utf-8") -> None:
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._buffer = ""

    @property
    def pending(self) -> str:
        return self._buffer

    def feed(self, chunk: bytes | str) -> list[str]:
        text = chunk if isinstance(chunk, str) else self._decoder.decode(chunk)
        if not text:
            return []
        self._buffer += text
        *complete, self._buffer = self._buffer.split("\n")
        return [line.strip() for line in complete if line.strip()]

    def flush(self) -> list[str]:
        tail = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        tail = tail.strip()
        return [tail] if tail else []


def decode_event(line: str) -> StreamEvent | None:
    """Parse one line into a :class:`StreamEvent`.

    Malformed lines are skipped (``None``) unless they look like a terminal
    ``result``/``error`` event, which raises :class:`ExecutionError` since
    losing one would hide the outcome of the run.
    """

    try:
        payload = json.loads(line)
    except json.JSONDecodeError as exc:
        if _TERMINAL_HINT.search(line):
            raise ExecutionError(
                message="Executor sent a malformed terminal event",
                details={"line": line[:500]},
            ) from exc
        LOGGER.warning("Skipping malformed stream line: %.200s", line)
        return None
    if not isinstance(payload, Mapping) or not isinstance(payload.get("type"), str):
        LOGGER.debug("Skipping stream line without an event type: %.200s", line)
        return None
    return StreamEvent(type=payload["type"], payload=payload)


async def iter_events(
    chunks: AsyncIterable[bytes], decoder: NdjsonDecoder | None = None
) -> AsyncGenerator[StreamEvent, None]:
    """Yield decoded events from an async byte iterator."""

    decoder = decoder or NdjsonDecoder()
    async for chunk in chunks:
        for line in decoder.feed(chunk):
            event = decode_event(line)
            if event is not None:
                yield event
    for line in decoder.flush():
        event = decode_event(line)
        if event is not None:
            yield event
