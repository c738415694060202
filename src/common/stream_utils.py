"""
Frame decoding for streamed provider responses.

Following PROJECT_RULES.md:
- Single responsibility: bytes -> discrete JSON events, no chat semantics
- Provider-agnostic SSE ("data: ...") and bare JSON-lines handling
- Malformed frames are skipped, never fatal
"""

import asyncio
import codecs
import json
from typing import Any, AsyncGenerator, AsyncIterator, Dict, List, Optional, Union

from common.errors import PartialTimeout, StreamDecodeError
from common.logging import get_logger, preview

logger = get_logger(__name__)

DONE_SENTINEL = "[DONE]"
_SSE_FIELD_PREFIXES = ("event:", "id:", "retry:")


class FrameDecoder:
    """
    Incremental line decoder.

    A network read may end mid-line (or mid UTF-8 sequence), so the trailing
    incomplete line is kept in a buffer and prepended to the next read. Each
    request owns its own decoder instance.
    """

    def __init__(self, provider: str = "unknown"):
        self.provider = provider
        self._buffer = ""
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self.events_decoded = 0
        self.lines_skipped = 0
        self.done = False
        self.timed_out = False
        self.cancelled = False

    def feed(self, data: Union[bytes, str]) -> List[Dict[str, Any]]:
        """Add one network read and return the events completed by it; nothing after the sentinel."""
        if self.done:
            return []
        text = self._utf8.decode(data) if isinstance(data, bytes) else data
        self._buffer += text
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()

        events = []
        for line in lines:
            event = self.parse_line(line)
            if event is not None:
                events.append(event)
            if self.done:
                self._buffer = ""
                break
        return events

    def flush(self) -> List[Dict[str, Any]]:
        """Give the residual partial line one final parse attempt, then discard it."""
        if self.done:
            return []
        residual = self._buffer + self._utf8.decode(b"", final=True)
        self._buffer = ""
        if not residual.strip():
            return []
        event = self.parse_line(residual)
        return [event] if event is not None else []

    def parse_line(self, line: str) -> Optional[Dict[str, Any]]:
        """
        Parse a single line into a JSON object.

        Returns None for blank lines, SSE comments and non-data fields, the
        stream-end sentinel, and frames that fail to parse.
        """
        stripped = line.strip()
        if not stripped or stripped.startswith(":"):
            return None
        if stripped.startswith(_SSE_FIELD_PREFIXES):
            return None

        payload = stripped[len("data:"):].strip() if stripped.startswith("data:") else stripped
        if payload == DONE_SENTINEL:
            self.done = True
            return None

        try:
            event = json.loads(payload)
        except json.JSONDecodeError as e:
            self._skip(StreamDecodeError(f"Invalid JSON frame: {e.msg}"), payload)
            return None

        if not isinstance(event, dict):
            self._skip(StreamDecodeError("Frame is not a JSON object"), payload)
            return None

        self.events_decoded += 1
        return event

    def _skip(self, error: StreamDecodeError, payload: str) -> None:
        self.lines_skipped += 1
        logger.warning(
            event="stream_frame_skipped",
            provider=self.provider,
            error=error.message,
            line_preview=preview(payload),
            lines_skipped=self.lines_skipped,
        )


async def read_with_idle_timeout(iterator: AsyncIterator[bytes], idle_timeout: Optional[float]) -> bytes:
    """
    Read the next body chunk, raising PartialTimeout when none arrives in time.

    Raises:
        StopAsyncIteration: when the body is exhausted
        PartialTimeout: when idle_timeout elapses without data
    """
    if idle_timeout is None:
        return await iterator.__anext__()
    try:
        return await asyncio.wait_for(iterator.__anext__(), timeout=idle_timeout)
    except asyncio.TimeoutError:
        raise PartialTimeout(idle_timeout)


async def iter_sse_events(
    byte_stream: AsyncIterator[bytes],
    *,
    decoder: FrameDecoder,
    idle_timeout: Optional[float] = None,
    cancel: Optional[asyncio.Event] = None,
) -> AsyncGenerator[Dict[str, Any], None]:
    """
    Drive a FrameDecoder over an async byte stream.

    Stops on the stream-end sentinel, end of body, idle timeout or cancellation.
    The outcome is recorded on the decoder (`done`, `timed_out`, `cancelled`).
    The cancellation token is checked before and after every read.
    """
    iterator = byte_stream.__aiter__()
    try:
        while not decoder.done:
            if cancel is not None and cancel.is_set():
                decoder.cancelled = True
                break

            try:
                data = await read_with_idle_timeout(iterator, idle_timeout)
            except StopAsyncIteration:
                break
            except PartialTimeout as e:
                decoder.timed_out = True
                logger.warning(
                    event="stream_idle_timeout",
                    provider=decoder.provider,
                    idle_timeout=e.idle_timeout,
                    events_decoded=decoder.events_decoded,
                )
                break

            if cancel is not None and cancel.is_set():
                decoder.cancelled = True
                break

            for event in decoder.feed(data):
                yield event

        if not decoder.cancelled:
            for event in decoder.flush():
                yield event
    finally:
        aclose = getattr(iterator, "aclose", None)
        if aclose is not None:
            await aclose()
