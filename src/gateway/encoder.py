"""
Output encoder: payload chunks -> newline-delimited JSON bytes.

Following PROJECT_RULES.md:
- Single responsibility: serialization and stream termination
- A failure mid-stream becomes a final inline error chunk
- Cancellation is checked around every upstream read
"""

import asyncio
import json
from typing import AsyncGenerator, AsyncIterator, Iterable, Optional

from common.errors import GatewayError
from common.logging import get_logger
from common.models import PayloadChunk

logger = get_logger(__name__)

NDJSON_MEDIA_TYPE = "application/x-ndjson; charset=utf-8"


def encode_chunk(chunk: PayloadChunk) -> bytes:
    """One chunk as one JSON line."""
    return (json.dumps(chunk.to_wire(), ensure_ascii=False) + "\n").encode("utf-8")


async def encode_stream(
    chunks: AsyncIterator[PayloadChunk],
    *,
    request_id: str = "",
    cancel: Optional[asyncio.Event] = None,
    primed: Iterable[PayloadChunk] = (),
) -> AsyncGenerator[bytes, None]:
    """
    Serialize a chunk stream as ND-JSON.

    `primed` holds chunks already pulled from `chunks` before the response
    started. Once the cancellation token is set no further chunks are read or
    written. Errors after the first line become one `[Error: ...]` chunk.
    """
    lines = 0
    try:
        for chunk in primed:
            lines += 1
            yield encode_chunk(chunk)

        while True:
            if cancel is not None and cancel.is_set():
                logger.info(event="stream_cancelled", request_id=request_id, lines=lines)
                break
            try:
                chunk = await chunks.__anext__()
            except StopAsyncIteration:
                break
            if cancel is not None and cancel.is_set():
                logger.info(event="stream_cancelled", request_id=request_id, lines=lines)
                break
            lines += 1
            yield encode_chunk(chunk)

    except asyncio.CancelledError:
        if cancel is not None:
            cancel.set()
        logger.info(event="stream_task_cancelled", request_id=request_id, lines=lines)
        raise
    except GatewayError as e:
        logger.error(
            event="stream_failed",
            request_id=request_id,
            error=e.message,
            error_type=type(e).__name__,
            lines=lines,
        )
        yield encode_chunk(PayloadChunk.error(e.message))
    except Exception as e:
        logger.error(
            event="stream_failed",
            request_id=request_id,
            error=str(e),
            error_type=type(e).__name__,
            lines=lines,
        )
        yield encode_chunk(PayloadChunk.error(str(e) or "Unknown streaming error"))
    finally:
        aclose = getattr(chunks, "aclose", None)
        if aclose is not None:
            await aclose()
        logger.info(event="stream_finished", request_id=request_id, lines=lines)
