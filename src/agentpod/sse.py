"""Incremental decoder for OpenAI-style chat completion event streams."""

import codecs
import json
from collections.abc import AsyncIterator, Iterator

import structlog

logger = structlog.get_logger(__name__)

DATA_PREFIX = "data:"
DONE_MARKER = "[DONE]"


class SSEDecoder:
    """
    Turn raw byte chunks into content deltas.

    Bytes are decoded with an incremental UTF-8 decoder, so multi-byte
    characters split across chunks survive. Complete lines are consumed from
    a residual buffer and the trailing partial line is kept for the next chunk.
    """

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.done = False

    def feed(self, chunk: bytes) -> list[str]:
        """Consume one chunk and return the deltas it completed."""
        if self.done:
            return []
        self._buffer += self._decoder.decode(chunk)
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        return list(self._deltas(lines))

    def close(self) -> list[str]:
        """Flush whatever is left once the byte stream has ended."""
        if self.done:
            return []
        self._buffer += self._decoder.decode(b"", final=True)
        remaining, self._buffer = self._buffer, ""
        return list(self._deltas([remaining]))

    def _deltas(self, lines: list[str]) -> Iterator[str]:
        for raw in lines:
            line = raw.strip()
            if not line.startswith(DATA_PREFIX):
                continue
            payload = line[len(DATA_PREFIX) :].strip()
            if payload == DONE_MARKER:
                self.done = True
                return
            try:
                event = json.loads(payload)
                content = event["choices"][0].get("delta", {}).get("content")
            except (json.JSONDecodeError, KeyError, IndexError, TypeError, AttributeError):
                logger.debug("sse_line_skipped", line=line[:200])
                continue
            if content:
                yield content


async def iter_deltas(chunks: AsyncIterator[bytes]) -> AsyncIterator[str]:
    """Yield content deltas from an async byte stream until ``[DONE]``."""
    decoder = SSEDecoder()
    async for chunk in chunks:
        for delta in decoder.feed(chunk):
            yield delta
        if decoder.done:
            return
    for delta in decoder.close():
        yield delta
