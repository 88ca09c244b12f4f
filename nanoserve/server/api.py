"""
FastAPI server for NanoServe.

Serves a master over HTTP with an OpenAI style chat completions endpoint and
optional server-sent-event streaming. Requests are handled one at a time:
the master owns a single model, so every request resets it, adds its
messages and runs a full generation while holding the lock.
"""

import asyncio
import contextlib
import json
import logging
import time
import uuid
from typing import TYPE_CHECKING, Any, AsyncIterator, Dict, List, Literal, Optional

import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from .. import __version__
from ..engine.sink import CollectingSink
from ..errors import AppendError, GenerationInProgressError, NanoServeError
from ..model.base import Message, Role

if TYPE_CHECKING:
    from ..engine.master import Master

logger = logging.getLogger(__name__)


class ChatMessage(BaseModel):
    """A chat message as sent over the wire."""
    role: Literal["system", "user", "assistant"]
    content: str


class ChatRequest(BaseModel):
    """Chat completion request."""
    model: Optional[str] = None
    messages: List[ChatMessage] = Field(..., min_length=1)
    max_tokens: Optional[int] = Field(None, ge=0)
    stream: bool = False


class ChatChoice(BaseModel):
    index: int
    message: ChatMessage
    finish_reason: str


class Usage(BaseModel):
    completion_tokens: int


class ChatResponse(BaseModel):
    """Chat completion response."""
    id: str
    object: str = "chat.completion"
    created: int
    model: str
    choices: List[ChatChoice]
    usage: Usage


class ModelInfo(BaseModel):
    """Model information."""
    model: str
    device: str
    config: Dict[str, Any]


def _prime(master: "Master", messages: List[ChatMessage]) -> None:
    """Reset the master and load the request conversation, in order."""
    master.reset()
    for message in messages:
        master.add_message(Message(Role(message.role), message.content))


def _http_error(error: NanoServeError) -> HTTPException:
    if isinstance(error, AppendError):
        status = 400
    elif isinstance(error, GenerationInProgressError):
        status = 409
    else:
        status = 500
    return HTTPException(status_code=status, detail=str(error))


def _event(payload: Dict[str, Any]) -> str:
    return f"data: {json.dumps(payload)}\n\n"


async def _stream_events(
    master: "Master",
    lock: asyncio.Lock,
    request: ChatRequest
) -> AsyncIterator[str]:
    """Run one generation and relay its tokens as server-sent events."""
    async with lock:
        queue: asyncio.Queue = asyncio.Queue()

        async def produce():
            try:
                _prime(master, request.messages)
                await master.generate(queue.put_nowait, echo=False, sample_len=request.max_tokens)
            except Exception as e:
                # Relayed to the consumer, which reports it to the client
                queue.put_nowait(e)

        producer = asyncio.create_task(produce())
        try:
            while True:
                item = await queue.get()
                if isinstance(item, Exception):
                    logger.error("streaming generation failed: %s", item)
                    yield _event({"error": str(item)})
                    break
                if not item:
                    yield "data: [DONE]\n\n"
                    break
                yield _event({"token": item})
        finally:
            # Client went away: stop generating once the in-flight token is done
            producer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await producer


def create_app(master: "Master") -> FastAPI:
    """Build the API application around a loaded master.

    Args:
        master: Master to serve, exclusively owned by the app from now on

    Returns:
        FastAPI application
    """
    app = FastAPI(
        title="NanoServe API",
        description="Lightweight LLM inference API",
        version=__version__
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    lock = asyncio.Lock()
    app.state.master = master

    @app.get("/api/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy", "model_loaded": master.model is not None}

    @app.get("/api/model_info")
    async def get_model_info():
        """Get model information."""
        return ModelInfo(
            model=master.config.model,
            device=str(getattr(master.model, "device", master.config.device)),
            config=master.config.to_dict()
        )

    @app.post("/api/v1/chat/completions")
    async def chat_completions(request: ChatRequest):
        """Chat completions endpoint."""
        if request.stream:
            return StreamingResponse(
                _stream_events(master, lock, request),
                media_type="text/event-stream",
                headers={"Cache-Control": "no-cache", "Connection": "keep-alive"}
            )

        sink = CollectingSink()
        async with lock:
            try:
                _prime(master, request.messages)
                end_of_stream = await master.generate(sink, echo=False, sample_len=request.max_tokens)
            except NanoServeError as e:
                logger.error("generation failed: %s", e)
                raise _http_error(e) from e
            completion_tokens = master.model.generated_tokens()

        return ChatResponse(
            id=f"chatcmpl-{uuid.uuid4().hex}",
            created=int(time.time()),
            model=request.model or master.config.model,
            choices=[
                ChatChoice(
                    index=0,
                    message=ChatMessage(role="assistant", content=sink.text),
                    finish_reason="stop" if end_of_stream else "length"
                )
            ],
            usage=Usage(completion_tokens=completion_tokens)
        )

    return app


async def serve(master: "Master") -> None:
    """Serve `master` on the configured API address until shut down."""
    host, port = master.config.api_address
    app = create_app(master)

    logger.info("starting API server on http://%s:%d", host, port)
    server = uvicorn.Server(uvicorn.Config(app, host=host, port=port, log_level="info"))
    await server.serve()
