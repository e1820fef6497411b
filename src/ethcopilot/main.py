import asyncio
import json
import logging
from contextlib import asynccontextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Awaitable

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from .agent import Orchestrator, Reply, close_orchestrator, get_orchestrator_async
from .errors import SessionCorrupted
from .services.session_store import close_session_store
from .settings import get_settings


def setup_server_logging(level: str = "INFO") -> logging.Logger:
    """Configure and return the server logger; module loggers propagate to ``ethcopilot``."""
    logs_dir = Path("logs")
    logs_dir.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger("ethcopilot.server")
    package_logger = logging.getLogger("ethcopilot")
    if package_logger.handlers:
        return logger

    package_logger.setLevel(level.upper())
    fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s - %(message)s")

    ch = logging.StreamHandler()
    ch.setFormatter(fmt)
    package_logger.addHandler(ch)

    fh = RotatingFileHandler(logs_dir / "server.log", maxBytes=5_000_000, backupCount=3)
    fh.setFormatter(fmt)
    package_logger.addHandler(fh)

    return logger


def _cors_origins_list(origins: str) -> list[str]:
    """Parse CORS_ORIGINS into a list."""
    if not origins or origins.strip() == "*":
        return ["*"]
    return [o.strip() for o in origins.split(",") if o.strip()]


settings = get_settings()
LOGGER = setup_server_logging(settings.log_level)


class ChatRequest(BaseModel):
    session_id: str = Field(default="default", min_length=1)
    message: str


class ChatResponse(BaseModel):
    session_id: str
    response: str
    tool_calls_count: int
    grounded: bool


async def _handle_until_disconnect(
    orchestrator: Orchestrator, session_id: str, message: str, disconnected: Awaitable[None]
) -> Reply | None:
    """Run one utterance, cancelling it if the client goes away first.

    Args:
        orchestrator: The orchestrator serving the request.
        session_id: Session the utterance belongs to.
        message: User message text.
        disconnected: Completes when the client has disconnected.

    Returns:
        Reply | None: The reply, or None when the client left before it was ready.
    """
    handle_task = asyncio.create_task(orchestrator.handle(session_id, message))
    watch_task = asyncio.ensure_future(disconnected)
    try:
        await asyncio.wait({handle_task, watch_task}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        handle_task.cancel()
        watch_task.cancel()
        raise
    watch_task.cancel()
    if watch_task.done() and not watch_task.cancelled() and watch_task.exception() is not None:
        LOGGER.debug("Disconnect watcher for %s failed: %s", session_id, watch_task.exception())

    if handle_task.done():
        return handle_task.result()
    LOGGER.info("Client for session %s disconnected; cancelling its request", session_id)
    handle_task.cancel()
    await asyncio.gather(handle_task, return_exceptions=True)
    return None


async def _websocket_closed(websocket: WebSocket) -> None:
    while True:
        frame = await websocket.receive()
        if frame["type"] == "websocket.disconnect":
            return
        LOGGER.debug("Ignoring WS frame received while a request is running")


async def _request_closed(request: Request, poll_seconds: float = 0.5) -> None:
    while not await request.is_disconnected():
        await asyncio.sleep(poll_seconds)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the orchestrator (index, chain adapter, optional Redis) at startup; close it on shutdown."""
    LOGGER.info("Starting orchestrator...")
    orchestrator = await get_orchestrator_async()
    LOGGER.info("Orchestrator ready")
    app.state.orchestrator = orchestrator

    yield

    LOGGER.info("Shutting down...")
    await close_orchestrator()
    await close_session_store()


app = FastAPI(
    title="Ethereum Copilot",
    version="0.1.0",
    debug=settings.debug,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins_list(settings.cors_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
async def health() -> dict[str, Any]:
    """Health check for load balancers and monitoring."""
    return {"status": "ok"}


@app.post("/chat", response_model=ChatResponse)
async def chat(request: ChatRequest, http_request: Request) -> ChatResponse:
    """Run one utterance through the orchestrator and return the response text.

    The utterance is cancelled if the HTTP client disconnects before the reply is ready.

    Args:
        request: Session id and message.
        http_request: The raw request, watched for client disconnects.

    Returns:
        ChatResponse: Response text, tool call count and whether it was grounded.
    """
    message = request.message.strip()
    if not message:
        raise HTTPException(status_code=400, detail="Empty message")
    orchestrator = app.state.orchestrator
    LOGGER.info("Chat session_id=%s", request.session_id)
    try:
        reply = await _handle_until_disconnect(
            orchestrator, request.session_id, message, _request_closed(http_request)
        )
    except SessionCorrupted as e:
        LOGGER.critical("Session %s corrupted: %s", request.session_id, e)
        raise HTTPException(status_code=500, detail="Session state is corrupted") from e
    if reply is None:
        raise HTTPException(status_code=499, detail="Client closed the request")
    session = orchestrator.get_session(request.session_id)
    return ChatResponse(
        session_id=request.session_id,
        response=reply.text,
        tool_calls_count=session.tool_calls_count,
        grounded=reply.grounded,
    )


@app.post("/sessions/{session_id}/reset")
async def reset_session(session_id: str) -> dict[str, Any]:
    """Clear a session's history and aliases.

    Returns:
        dict[str, Any]: ``{"session_id", "reset"}``; reset is False for unknown sessions.
    """
    reset = await app.state.orchestrator.reset(session_id)
    return {"session_id": session_id, "reset": reset}


@app.post("/sessions/{session_id}/cancel")
async def cancel_session(session_id: str) -> dict[str, Any]:
    """Cancel the session's in-flight request, if any."""
    cancelled = app.state.orchestrator.cancel(session_id)
    return {"session_id": session_id, "cancelled": cancelled}


@app.websocket("/ws/chat")
async def chat_ws(websocket: WebSocket) -> None:
    """WebSocket chat endpoint: client sends { session_id, message }, server replies then done.

    Closing the socket while the request runs cancels it.

    Args:
        websocket: The client connection.

    Response frames:
        - {"type": "token", "data": str} - the response text
        - {"type": "done", "session_id": str, "tool_calls_count": int}
        - {"type": "error", "data": str}
    """
    await websocket.accept()
    try:
        raw = await websocket.receive_text()
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as e:
            LOGGER.error("Invalid WS payload (not JSON): %s", e)
            await websocket.send_json({"type": "error", "data": "Invalid JSON payload"})
            await websocket.close()
            return

        session_id = str(payload.get("session_id") or "default")
        message = str(payload.get("message") or "").strip()

        if not message:
            await websocket.send_json({"type": "error", "data": "Empty message"})
            await websocket.close()
            return

        LOGGER.info("WS chat start session_id=%s", session_id)
        orchestrator = websocket.app.state.orchestrator
        try:
            reply = await _handle_until_disconnect(
                orchestrator, session_id, message, _websocket_closed(websocket)
            )
        except SessionCorrupted as e:
            LOGGER.critical("Session %s corrupted: %s", session_id, e)
            await websocket.send_json({"type": "error", "data": "Session state is corrupted"})
            await websocket.close()
            return
        if reply is None:
            LOGGER.info("WS disconnect during request session_id=%s", session_id)
            return

        if reply.text:
            await websocket.send_json({"type": "token", "data": reply.text})
        session = orchestrator.get_session(session_id)
        await websocket.send_json(
            {
                "type": "done",
                "session_id": session_id,
                "tool_calls_count": session.tool_calls_count,
            }
        )

    except WebSocketDisconnect:
        LOGGER.info("WS disconnect")
    except (ConnectionError, TimeoutError, RuntimeError) as e:
        LOGGER.exception("Unexpected WS error: %s", e)
        try:
            await websocket.send_json({"type": "error", "data": str(e)})
        except (OSError, RuntimeError, ValueError, TypeError):
            pass
        try:
            await websocket.close()
        except (OSError, RuntimeError):
            pass


def run() -> None:
    import uvicorn

    uvicorn.run("ethcopilot.main:app", host=settings.host, port=settings.port)
