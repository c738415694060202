"""
HTTP gateway using FastAPI.

Main gateway orchestrator that delegates to specialized handlers.
Following PROJECT_RULES.md:
- Async/await for all I/O operations
- Structured logging with elapsed_ms
- Setup failures return a JSON error, stream failures an inline error line
- Single responsibility: HTTP protocol handling
"""

import asyncio
import contextlib
import uuid
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Dict, List, Optional
from urllib.parse import quote

from fastapi import FastAPI, File, Form, Request, UploadFile
from fastapi.responses import JSONResponse, StreamingResponse

from common.config import Config
from common.errors import GatewayError
from common.logging import TimedLogger, get_logger, request_context
from common.models import PayloadChunk
from gateway.encoder import NDJSON_MEDIA_TYPE, encode_stream
from gateway.media_handler import MediaHandler
from gateway.stream_manager import StreamManager
from router.message_types import ChatRequest, DispatchResult
from router.request_router import RequestRouter

logger = get_logger(__name__)

WARNINGS_HEADER = "X-Gateway-Warnings"

# Printable ASCII except %, so encoded values can be told apart from literal text
_HEADER_SAFE = " !\"#$&'()*+,-./:;<=>?@[\\]^_`{|}~"


def header_value(text: str) -> str:
    """Percent-encode anything outside printable ASCII (model names, CR/LF)."""
    return quote(text, safe=_HEADER_SAFE)


def error_response(error: GatewayError, request_id: str = "") -> JSONResponse:
    """Structured error for failures detected before streaming starts."""
    logger.warning(
        event="request_rejected",
        request_id=request_id,
        status=error.status_code,
        error_type=type(error).__name__,
        error=error.message,
    )
    return JSONResponse({"error": error.message}, status_code=error.status_code)


class ChatGateway:
    """FastAPI gateway that parses chat requests and streams routed responses."""

    def __init__(self, config: Config, router: Optional[RequestRouter] = None):
        self.config = config
        self.router = router or RequestRouter(config)
        self.stream_manager = StreamManager()
        self.media_handler = MediaHandler(max_upload_size=config.gateway.max_upload_size)
        self.app = FastAPI(title="Streaming Gateway", version="0.1.0", lifespan=self._lifespan)

        self._setup_routes()

    @asynccontextmanager
    async def _lifespan(self, app: FastAPI) -> AsyncGenerator[None, None]:
        logger.info(event="gateway_started")
        yield
        cancelled = self.stream_manager.cancel_all()
        await self.router.aclose()
        logger.info(event="gateway_stopped", streams_cancelled=cancelled)

    def _setup_routes(self) -> None:
        """Setup FastAPI routes."""

        @self.app.get("/health")
        async def health_check():
            """Health check endpoint."""
            providers = self.router.health()
            return JSONResponse(
                {
                    "status": "healthy",
                    "active_streams": self.stream_manager.get_stream_count(),
                    "providers": providers,
                }
            )

        @self.app.post("/api/chat")
        async def chat(
            request: Request,
            message: str = Form(""),
            history: Optional[str] = Form(None),
            base64_data: Optional[str] = Form(None, alias="base64"),
            converted_type: Optional[str] = Form(None, alias="convertedType"),
            file_uri: Optional[str] = Form(None, alias="fileUri"),
            file_mime_type: Optional[str] = Form(None, alias="fileMimeType"),
            file_name: Optional[str] = Form(None, alias="fileName"),
            model_name: Optional[str] = Form(None, alias="modelName"),
            file: Optional[UploadFile] = File(None),
            audio: Optional[UploadFile] = File(None),
        ):
            """Stream a chat response as ND-JSON."""
            request_id = str(uuid.uuid4())
            with request_context(request_id=request_id):
                try:
                    chat_request = ChatRequest(
                        request_id=request_id,
                        message=message,
                        history=self.media_handler.parse_history(history),
                        attachment=await self.media_handler.build_attachment(
                            base64_data=base64_data,
                            converted_type=converted_type,
                            file_uri=file_uri,
                            file_mime_type=file_mime_type,
                            file_name=file_name,
                            file=file,
                            audio=audio,
                        ),
                        model_selector=model_name or "",
                    )
                    dispatch = self.router.dispatch(chat_request)
                except GatewayError as e:
                    return error_response(e, request_id)

                return await self._start_stream(request, dispatch)

        @self.app.get("/api/predictions/{prediction_id}")
        async def get_prediction(prediction_id: str):
            """Current state of an async image job."""
            try:
                job = await self.router.get_job(prediction_id)
            except GatewayError as e:
                logger.error(
                    event="prediction_fetch_failed",
                    prediction_id=prediction_id,
                    error=e.message,
                )
                return JSONResponse({"detail": e.message}, status_code=e.status_code)

            if job.error:
                return JSONResponse({"detail": job.error}, status_code=500)
            return JSONResponse(job.model_dump(mode="json"))

    async def _start_stream(self, request: Request, dispatch: DispatchResult):
        """
        Pull the first chunk before committing to a streaming response.

        Errors raised while connecting upstream still produce a JSON error with
        a status code; anything after that is reported inside the stream.
        """
        request_id = dispatch.request.request_id
        cancel = self.stream_manager.open(request_id)
        chunks = self.router.stream(dispatch, cancel)

        primed: List[PayloadChunk] = []
        try:
            with TimedLogger(logger, "stream_primed", request_id=request_id):
                primed.append(await chunks.__anext__())
        except StopAsyncIteration:
            pass
        except GatewayError as e:
            self.stream_manager.close(request_id)
            await chunks.aclose()
            return error_response(e, request_id)
        except Exception as e:
            self.stream_manager.close(request_id)
            await chunks.aclose()
            logger.error(
                event="stream_setup_failed",
                request_id=request_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return JSONResponse({"error": f"Failed to start stream: {e}"}, status_code=500)

        headers: Dict[str, str] = {"X-Request-ID": request_id}
        if dispatch.warnings:
            headers[WARNINGS_HEADER] = header_value(" | ".join(dispatch.warnings))

        async def body() -> AsyncGenerator[bytes, None]:
            watcher = asyncio.create_task(
                self.stream_manager.watch_disconnect(
                    request, request_id, cancel, self.config.gateway.disconnect_poll_interval
                )
            )
            try:
                async for line in encode_stream(
                    chunks, request_id=request_id, cancel=cancel, primed=primed
                ):
                    yield line
            finally:
                watcher.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await watcher
                self.stream_manager.close(request_id)

        try:
            return StreamingResponse(body(), media_type=NDJSON_MEDIA_TYPE, headers=headers)
        except Exception as e:
            # body() never ran, so its cleanup has to happen here
            self.stream_manager.close(request_id)
            await chunks.aclose()
            logger.error(
                event="stream_response_failed",
                request_id=request_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return JSONResponse({"error": f"Failed to start stream: {e}"}, status_code=500)


def create_gateway_app(config: Config, router: Optional[RequestRouter] = None) -> FastAPI:
    """Create and configure the FastAPI gateway application."""
    gateway = ChatGateway(config, router)
    return gateway.app
