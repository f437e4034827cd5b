import asyncio
import contextlib
import logging
import os
from contextlib import asynccontextmanager
from typing import Annotated, Optional

from fastapi import FastAPI, Form, HTTPException, Query, Request, Response, WebSocket, WebSocketDisconnect, status
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import FileResponse, PlainTextResponse

from message_proxy.assembler import Assembler, render_json
from message_proxy.broadcaster import LiveUpdateBroadcaster
from message_proxy.config import settings
from message_proxy.contacts import load_contacts
from message_proxy.logging_utils import setup_logging, RequestLoggingMiddleware, log_api_data
from message_proxy.metrics import get_metrics, get_metrics_content_type
from message_proxy.notifier import IftttNotifier
from message_proxy.poller import PollLoop, WatermarkInitError
from message_proxy.schemas import HealthResponse, VersionResponse
from message_proxy.send_queue import SendQueue
from message_proxy.sender import OsascriptSender
from message_proxy.storage import StoreReader, check_store_health, create_store_engine
from message_proxy.utils import verify_token


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: open the chat store, build the components, start the poll
      loop and the send queue worker
    - Shutdown: stop background tasks and release the store
    """
    engine = create_store_engine(settings.CHAT_DB_PATH)
    reader = StoreReader(engine)
    contacts = load_contacts(settings.CONTACTS_PATH, settings.COUNTRY_CODE_PREFIX)
    assembler = Assembler(
        reader,
        contacts,
        country_code_prefix=settings.COUNTRY_CODE_PREFIX,
        default_limit=settings.DEFAULT_MESSAGE_LIMIT,
    )
    broadcaster = LiveUpdateBroadcaster(send_timeout=settings.BROADCAST_TIMEOUT_SECONDS)
    notifier = IftttNotifier(
        key=settings.IFTTT_MAKER_KEY,
        event=settings.IFTTT_EVENT,
        base_url=settings.NOTIFIER_BASE_URL,
        timeout=settings.NOTIFIER_TIMEOUT_SECONDS,
    )
    send_queue = SendQueue(
        reader,
        OsascriptSender(settings.OSASCRIPT_PATH),
        notifier,
        broadcaster,
        verify_attempts=settings.SEND_VERIFY_ATTEMPTS,
        verify_interval=settings.SEND_VERIFY_INTERVAL_SECONDS,
        max_failures=settings.SEND_MAX_FAILURES,
        verify_window=settings.SEND_VERIFY_WINDOW,
    )
    poll_loop = PollLoop(
        reader,
        assembler,
        broadcaster,
        notifier,
        interval=settings.POLL_INTERVAL_SECONDS,
        batch_size=settings.POLL_BATCH_SIZE,
    )

    app.state.engine = engine
    app.state.assembler = assembler
    app.state.broadcaster = broadcaster
    app.state.send_queue = send_queue
    app.state.poll_loop = poll_loop

    tasks = [asyncio.create_task(send_queue.run(), name="send-queue")]
    try:
        poll_loop.initialize()
        tasks.append(asyncio.create_task(poll_loop.run(), name="poll-loop"))
    except WatermarkInitError as e:
        # Reads and sends keep working; only new-message detection is off
        logger.error(f"Polling disabled: {e}")

    yield

    for task in tasks:
        task.cancel()
    for task in tasks:
        with contextlib.suppress(asyncio.CancelledError):
            await task
    await notifier.drain()
    engine.dispose()


app = FastAPI(
    title="Message Proxy",
    description="HTTP and live socket API over a local chat database",
    version=settings.APP_VERSION,
    lifespan=lifespan,
)

app.add_middleware(GZipMiddleware, minimum_size=500)
app.add_middleware(RequestLoggingMiddleware)


def require_token(request: Request, token: Optional[str], **log_fields) -> None:
    """Reject the request with 401 unless the shared token matches."""
    if not verify_token(token, settings.API_TOKEN):
        logger.warning("Rejected request with invalid token")
        log_api_data(request, auth="invalid_token", **log_fields)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="invalid token"
        )
    log_api_data(request, auth="ok", **log_fields)


def json_response(payload) -> Response:
    return Response(content=render_json(payload), media_type="application/json")


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness probe - always returns 200 once the app is running.
    """
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
def health_ready(request: Request, response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if:
    1. API_TOKEN is set (non-empty)
    2. The chat store is reachable and has a message table
    3. The poll loop is running

    Otherwise returns 503 (Service Unavailable).
    """
    if not settings.API_TOKEN:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="API_TOKEN not configured")

    if not check_store_health(request.app.state.engine):
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="Chat store not reachable")

    if not request.app.state.poll_loop.running:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="Poll loop not running")

    return HealthResponse(status="ready")


@app.get("/isUp")
async def is_up(t: Annotated[Optional[str], Query()] = None):
    """
    Reachability probe for clients.

    Only a caller holding the token learns the server version.
    """
    if verify_token(t, settings.API_TOKEN):
        return VersionResponse(version=settings.APP_VERSION)
    return PlainTextResponse("Invalid parameters")


# =============================================================================
# Read Routes
# =============================================================================

@app.get("/conversations")
def list_conversations(
    request: Request,
    t: Annotated[Optional[str], Query(description="API token")] = None,
) -> Response:
    """
    List conversations with participants, display name and last message.
    """
    require_token(request, t)
    conversations = request.app.state.assembler.list_conversations()
    logger.info(f"GET /conversations: returned {len(conversations)} conversations")
    return json_response(conversations)


@app.post("/messages")
def list_messages(
    request: Request,
    conversation_id: Annotated[int, Form(alias="conversationID", description="Chat ROWID")],
    t: Annotated[Optional[str], Form(description="API token")] = None,
    limit: Annotated[Optional[int], Form(ge=1, le=1000, description="Number of recent messages")] = None,
) -> Response:
    """
    Most recent messages of a conversation, oldest first.
    """
    require_token(request, t, chat_id=conversation_id)
    messages = request.app.state.assembler.list_messages(conversation_id, limit)
    logger.info(f"POST /messages: returned {len(messages)} messages for chat {conversation_id}")
    return json_response(messages)


@app.get("/attachment")
def get_attachment(
    request: Request,
    attachment_id: Annotated[int, Query(alias="id", description="Attachment ROWID")],
    t: Annotated[Optional[str], Query(description="API token")] = None,
):
    """
    Serve an attachment file from disk.
    """
    require_token(request, t, attachment_id=attachment_id)
    attachment = request.app.state.assembler.get_attachment(attachment_id)
    if attachment is None or attachment.path_to_file is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="attachment not found"
        )

    file_path = os.path.expanduser(attachment.path_to_file)
    if not os.path.isfile(file_path):
        logger.warning(f"Attachment {attachment_id} missing on disk: {file_path}")
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="attachment file not readable"
        )

    logger.info(f"Serving attachment {attachment_id} from {file_path}")
    return FileResponse(file_path, media_type=attachment.mime_type)


# =============================================================================
# Send Route
# =============================================================================

@app.post("/send", response_class=PlainTextResponse)
async def send_message(
    request: Request,
    participants: Annotated[str, Form(description="Comma separated recipients or group name")],
    message: Annotated[str, Form(description="Message body")],
    t: Annotated[Optional[str], Form(description="API token")] = None,
) -> str:
    """
    Queue a message for sending and return without waiting for delivery.

    Delivery failures are reported later through a push notification and a
    message.failed live event.
    """
    require_token(request, t, recipients=participants)
    request.app.state.send_queue.enqueue(participants, message)
    return f"OK: {participants} :: {message}"


# =============================================================================
# Live Updates
# =============================================================================

@app.websocket("/live")
async def live_updates(websocket: WebSocket):
    """
    Live update socket.

    Handshake: server sends OK, client answers with the API token, server
    replies READY (subscribed) or FAIL (closed).
    """
    await websocket.accept()
    await websocket.send_text("OK")
    try:
        token = await asyncio.wait_for(
            websocket.receive_text(), timeout=settings.AUTH_TIMEOUT_SECONDS
        )
    except WebSocketDisconnect:
        return
    except asyncio.TimeoutError:
        token = None

    if not verify_token(token.strip() if token else None, settings.API_TOKEN):
        logger.warning("Live socket authentication failed")
        await websocket.send_text("FAIL")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.send_text("READY")
    broadcaster = websocket.app.state.broadcaster
    broadcaster.subscribe(websocket)
    try:
        # Client frames are only keepalives
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.info("Live socket disconnected")
    finally:
        broadcaster.unsubscribe(websocket)


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
