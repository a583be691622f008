"""Tests for the SSE delta decoder."""

import pytest

from agentpod.sse import SSEDecoder, iter_deltas


def event(content):
    return f'data: {{"choices":[{{"delta":{{"content":"{content}"}}}}]}}\n\n'


async def chunks(*parts):
    for part in parts:
        yield part


STREAM = (
    ": keepalive\n"
    + event("Hello")
    + event(" wörld ☃")
    + "data: [DONE]\n\n"
    + event("after done")
).encode("utf-8")


class TestChunkBoundaries:
    @pytest.mark.parametrize("split", range(len(STREAM) + 1))
    def test_any_split_point_decodes_the_same(self, split):
        decoder = SSEDecoder()

        out = decoder.feed(STREAM[:split]) + decoder.feed(STREAM[split:])
        out += decoder.close()

        assert out == ["Hello", " wörld ☃"]
        assert decoder.done

    def test_byte_at_a_time(self):
        decoder = SSEDecoder()

        out = []
        for i in range(len(STREAM)):
            out.extend(decoder.feed(STREAM[i : i + 1]))
        out.extend(decoder.close())

        assert out == ["Hello", " wörld ☃"]


class TestSSEDecoder:
    def test_line_split_across_chunks(self):
        decoder = SSEDecoder()
        raw = event("Hello").encode()

        assert decoder.feed(raw[:10]) == []
        assert decoder.feed(raw[10:]) == ["Hello"]

    def test_multibyte_character_split_across_chunks(self):
        decoder = SSEDecoder()
        raw = event("café ☃").encode("utf-8")
        snowman = raw.index("☃".encode("utf-8"))

        out = decoder.feed(raw[: snowman + 1]) + decoder.feed(raw[snowman + 1 :])

        assert out == ["café ☃"]

    def test_non_data_lines_ignored(self):
        decoder = SSEDecoder()
        raw = (": keepalive\nevent: message\n" + event("x")).encode()
        assert decoder.feed(raw) == ["x"]

    def test_malformed_json_skipped(self):
        decoder = SSEDecoder()
        raw = ("data: {not json\n\n" + event("ok")).encode()
        assert decoder.feed(raw) == ["ok"]

    def test_empty_delta_not_yielded(self):
        decoder = SSEDecoder()
        raw = b'data: {"choices":[{"delta":{"role":"assistant"}}]}\n\n'
        assert decoder.feed(raw) == []

    def test_done_stops_decoding(self):
        decoder = SSEDecoder()
        raw = (event("a") + "data: [DONE]\n\n" + event("b")).encode()

        assert decoder.feed(raw) == ["a"]
        assert decoder.done
        assert decoder.feed(event("c").encode()) == []

    def test_trailing_line_without_newline_flushed_on_close(self):
        decoder = SSEDecoder()
        raw = event("tail").rstrip("\n").encode()

        assert decoder.feed(raw) == []
        assert decoder.close() == ["tail"]


class TestIterDeltas:
    @pytest.mark.asyncio
    async def test_stops_at_done(self):
        consumed = []

        async def source():
            for part in (event("a").encode(), b"data: [DONE]\n\n", event("b").encode()):
                consumed.append(part)
                yield part

        deltas = [d async for d in iter_deltas(source())]

        assert deltas == ["a"]
        assert len(consumed) == 2

    @pytest.mark.asyncio
    async def test_stream_without_done(self):
        deltas = [
            d async for d in iter_deltas(chunks(event("a").encode(), event("b").encode()))
        ]
        assert deltas == ["a", "b"]
