"""
Tests for the streamed frame decoder.
"""

import asyncio
from typing import AsyncIterator, List

import pytest

from common.stream_utils import FrameDecoder, iter_sse_events

SAMPLE = (
    b": keep-alive\n"
    b"event: message\n"
    b'data: {"choices":[{"delta":{"content":"Hel"}}]}\n'
    b"\n"
    b'data: {"choices":[{"delta":{"content":"lo \xc3\xa9"}}]}\n'
    b"data: {not json\n"
    b'{"choices":[{"delta":{"content":"!"}}]}\n'
    b"data: [DONE]\n"
)


def _contents(events) -> List[str]:
    return [event["choices"][0]["delta"]["content"] for event in events]


async def _byte_stream(chunks: List[bytes], delay: float = 0.0) -> AsyncIterator[bytes]:
    for chunk in chunks:
        if delay:
            await asyncio.sleep(delay)
        yield chunk


def test_decoder_whole_buffer():
    """Test decoding a whole response in one read."""
    decoder = FrameDecoder("test")
    events = decoder.feed(SAMPLE)

    assert _contents(events) == ["Hel", "lo é", "!"]
    assert decoder.done is True
    assert decoder.events_decoded == 3
    assert decoder.lines_skipped == 1


def test_decoder_byte_at_a_time_matches_whole_buffer():
    """Splitting reads at arbitrary points (even inside UTF-8) gives the same events."""
    decoder = FrameDecoder("test")
    events = []
    for i in range(len(SAMPLE)):
        events.extend(decoder.feed(SAMPLE[i:i + 1]))

    assert _contents(events) == ["Hel", "lo é", "!"]
    assert decoder.lines_skipped == 1


def test_decoder_stops_at_done_sentinel():
    """Frames after [DONE] are dropped whether they arrive in the same read or later."""
    body = b'data: {"a": 1}\n\ndata: [DONE]\n\ndata: {"b": 2}\n\ndata: {"c": 3}'

    whole = FrameDecoder("test")
    whole_events = whole.feed(body) + whole.flush()

    split = FrameDecoder("test")
    split_events = []
    for i in range(len(body)):
        split_events.extend(split.feed(body[i:i + 1]))
    split_events.extend(split.flush())

    assert whole_events == [{"a": 1}]
    assert split_events == [{"a": 1}]
    assert whole.events_decoded == split.events_decoded == 1


def test_decoder_ignores_non_object_frames():
    """JSON that is not an object is skipped."""
    decoder = FrameDecoder("test")

    assert decoder.feed(b"data: [1, 2]\n") == []
    assert decoder.lines_skipped == 1


def test_flush_parses_residual_line():
    """A final line without a newline gets one parse attempt."""
    decoder = FrameDecoder("test")

    assert decoder.feed(b'data: {"a": 1}') == []
    assert decoder.flush() == [{"a": 1}]
    assert decoder.flush() == []


def test_flush_discards_malformed_residual():
    """A truncated final line is skipped, not raised."""
    decoder = FrameDecoder("test")
    decoder.feed(b'data: {"a": ')

    assert decoder.flush() == []
    assert decoder.lines_skipped == 1


@pytest.mark.asyncio
async def test_iter_sse_events_stops_at_done():
    """Events after the end sentinel are not read."""
    decoder = FrameDecoder("test")
    chunks = [b'data: {"n": 1}\n', b"data: [DONE]\n", b'data: {"n": 2}\n']

    events = [e async for e in iter_sse_events(_byte_stream(chunks), decoder=decoder)]

    assert events == [{"n": 1}]
    assert decoder.done is True


@pytest.mark.asyncio
async def test_iter_sse_events_idle_timeout_keeps_partial_output():
    """A stalled stream ends with the events received so far."""
    decoder = FrameDecoder("test")

    async def stalled() -> AsyncIterator[bytes]:
        yield b'data: {"n": 1}\n'
        await asyncio.sleep(5)
        yield b'data: {"n": 2}\n'

    events = [
        e async for e in iter_sse_events(stalled(), decoder=decoder, idle_timeout=0.05)
    ]

    assert events == [{"n": 1}]
    assert decoder.timed_out is True
    assert decoder.done is False


@pytest.mark.asyncio
async def test_iter_sse_events_honours_cancellation():
    """No reads happen after the cancellation token is set."""
    decoder = FrameDecoder("test")
    cancel = asyncio.Event()
    chunks = [b'data: {"n": 1}\n', b'data: {"n": 2}\n', b'data: {"n": 3}\n']

    events = []
    async for event in iter_sse_events(_byte_stream(chunks), decoder=decoder, cancel=cancel):
        events.append(event)
        cancel.set()

    assert events == [{"n": 1}]
    assert decoder.cancelled is True


@pytest.mark.asyncio
async def test_iter_sse_events_flushes_unterminated_tail():
    """A body ending without a newline still yields its last frame."""
    decoder = FrameDecoder("test")
    chunks = [b'{"n": 1}\n{"n"', b': 2}']

    events = [e async for e in iter_sse_events(_byte_stream(chunks), decoder=decoder)]

    assert events == [{"n": 1}, {"n": 2}]
