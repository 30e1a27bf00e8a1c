"""
Incremental decoder for the upstream ``data: <json>`` event stream.

Bytes arrive in arbitrary slices; the decoder buffers partial lines (and
partial UTF-8 sequences) between reads, so the chunks produced do not
depend on where the transport happened to split the stream.
"""

import codecs
import json
from typing import Any, AsyncGenerator, AsyncIterable, List, Optional

import structlog

from cardgen.providers.base import ChatStreamChunk, normalize_finish_reason, parse_usage

logger = structlog.get_logger()

DONE_MARKER = "[DONE]"


class SSEDecoder:
    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._partial: List[str] = []  # pieces of the current unterminated line
        self.model: Optional[str] = None
        self.done = False

    def feed(self, data: bytes) -> List[ChatStreamChunk]:
        if self.done:
            return []
        text = self._decoder.decode(data)
        if "\n" not in text:
            self._partial.append(text)
            return []
        # only the new text is split; the held-over partial line prefixes its first piece
        head, *rest = text.split("\n")
        lines = ["".join(self._partial) + head] + rest[:-1]
        self._partial = [rest[-1]]
        chunks: List[ChatStreamChunk] = []
        for line in lines:
            chunk = self._handle_line(line)
            if chunk is not None:
                chunks.append(chunk)
            if self.done:
                break
        return chunks

    def flush(self) -> List[ChatStreamChunk]:
        """Best-effort parse of whatever is left once the byte source ends."""
        if self.done:
            return []
        self._partial.append(self._decoder.decode(b"", final=True))
        leftover, self._partial = "".join(self._partial), []
        if not leftover.strip():
            return []
        chunk = self._handle_line(leftover)
        return [chunk] if chunk is not None else []

    def _handle_line(self, raw: str) -> Optional[ChatStreamChunk]:
        line = raw.rstrip("\r")
        if not line.strip() or line.startswith(":"):
            return None
        if not line.startswith("data:"):
            # event:/id:/retry: fields carry nothing we use
            return None
        payload = line[5:].strip()
        if payload == DONE_MARKER:
            self.done = True
            if self.model:
                return ChatStreamChunk(delta="", model=self.model, finish_reason="stop")
            return None
        try:
            event = json.loads(payload)
        except json.JSONDecodeError as exc:
            logger.warning("sse_event_malformed", error=str(exc), line=payload[:200])
            return None
        if not isinstance(event, dict):
            logger.warning("sse_event_malformed", error="event is not an object", line=payload[:200])
            return None
        return self._chunk_from_event(event)

    def _chunk_from_event(self, event: dict) -> Optional[ChatStreamChunk]:
        model = event.get("model")
        if isinstance(model, str) and model:
            self.model = model

        delta: Optional[str] = None
        finish_reason = None
        choices = event.get("choices")
        if isinstance(choices, list) and choices and isinstance(choices[0], dict):
            choice = choices[0]
            delta_obj = choice.get("delta")
            if isinstance(delta_obj, dict) and isinstance(delta_obj.get("content"), str):
                delta = delta_obj["content"]
            finish_reason = normalize_finish_reason(choice.get("finish_reason"))

        raw_usage: Any = event.get("usage")
        has_usage = isinstance(raw_usage, dict)
        if delta is None and finish_reason is None and not has_usage:
            # role-only deltas, keep-alives and similar
            return None
        return ChatStreamChunk(
            delta=delta or "",
            model=self.model or "unknown",
            finish_reason=finish_reason,
            usage=parse_usage(raw_usage) if has_usage else None,
        )


async def iter_chunks(source: AsyncIterable[bytes]) -> AsyncGenerator[ChatStreamChunk, None]:
    decoder = SSEDecoder()
    async for data in source:
        for chunk in decoder.feed(data):
            yield chunk
        if decoder.done:
            return
    for chunk in decoder.flush():
        yield chunk


class ChatStream:
    """
    Single-pass stream of completion chunks.

    Use it as ``async with client.stream(opts) as chunks: async for ...`` so
    the upstream connection is released even when iteration stops early.
    """

    def __init__(self, chunks: AsyncGenerator[ChatStreamChunk, None]):
        self._chunks = chunks
        self._closed = False

    def __aiter__(self) -> "ChatStream":
        return self

    async def __anext__(self) -> ChatStreamChunk:
        if self._closed:
            raise StopAsyncIteration
        return await self._chunks.__anext__()

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._chunks.aclose()

    async def __aenter__(self) -> "ChatStream":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()
