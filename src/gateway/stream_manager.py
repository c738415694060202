"""
Active stream registry and cancellation.

Handles stream lifecycle, client disconnect detection, and shutdown cancellation.
Following PROJECT_RULES.md:
- Single responsibility: stream bookkeeping only
- Async I/O for all operations
"""

import asyncio
from typing import Dict

from starlette.requests import Request

from common.logging import get_logger

logger = get_logger(__name__)


class StreamManager:
    """Tracks one cancellation token per in-flight streaming response."""

    def __init__(self):
        self.active_streams: Dict[str, asyncio.Event] = {}

    def open(self, request_id: str) -> asyncio.Event:
        """Register a stream and return its cancellation token."""
        cancel = asyncio.Event()
        self.active_streams[request_id] = cancel
        logger.info(
            event="stream_opened",
            request_id=request_id,
            active_streams=len(self.active_streams),
        )
        return cancel

    def close(self, request_id: str) -> None:
        """Forget a finished stream."""
        if self.active_streams.pop(request_id, None) is not None:
            logger.info(
                event="stream_closed",
                request_id=request_id,
                active_streams=len(self.active_streams),
            )

    def cancel(self, request_id: str) -> bool:
        """
        Signal one stream to stop.

        Returns:
            True if the stream was active
        """
        cancel = self.active_streams.get(request_id)
        if cancel is None:
            return False
        cancel.set()
        logger.info(event="stream_cancel_requested", request_id=request_id)
        return True

    def cancel_all(self) -> int:
        """Signal every active stream to stop. Returns how many were signalled."""
        count = 0
        for cancel in self.active_streams.values():
            if not cancel.is_set():
                cancel.set()
                count += 1
        if count:
            logger.info(event="streams_cancelled", count=count)
        return count

    async def watch_disconnect(
        self, request: Request, request_id: str, cancel: asyncio.Event, poll_interval: float
    ) -> None:
        """Set the token when the client goes away. Runs until the token is set or the task is cancelled."""
        while not cancel.is_set():
            if await request.is_disconnected():
                logger.info(event="client_disconnected", request_id=request_id)
                cancel.set()
                return
            await asyncio.sleep(poll_interval)

    def get_stream_count(self) -> int:
        """Get the total number of active streams."""
        return len(self.active_streams)
