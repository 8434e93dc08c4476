import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response, WebSocket, WebSocketDisconnect, status
from starlette.concurrency import run_in_threadpool

from chat_relay.config import settings
from chat_relay.logging_utils import setup_logging, RequestLoggingMiddleware, log_context
from chat_relay.metrics import get_metrics, get_metrics_content_type
from chat_relay.presence import PresenceCounter
from chat_relay.relay import ERROR_MALFORMED_EVENT, RelayManager
from chat_relay.schemas import EVENT_ERROR, HealthResponse, OnlineUsersResponse
from chat_relay.storage import create_store
from chat_relay.sweeper import RetentionSweeper
from chat_relay.transport import SessionRegistry


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: build the store, session registry and relay; start the sweeper
      (which sweeps once immediately)
    - Shutdown: stop the sweeper and close remaining sessions
    """
    store = create_store(settings)
    registry = SessionRegistry(queue_size=settings.SEND_QUEUE_SIZE)

    app.state.store = store
    app.state.registry = registry
    app.state.presence = PresenceCounter(registry)
    app.state.relay = RelayManager(
        store,
        registry,
        retention_hours=settings.RETENTION_HOURS,
        history_limit=settings.HISTORY_LIMIT,
        max_content_length=settings.MAX_CONTENT_LENGTH,
    )
    sweeper = RetentionSweeper(
        store,
        retention_hours=settings.RETENTION_HOURS,
        interval_seconds=settings.SWEEP_INTERVAL_SECONDS,
    )
    app.state.sweeper = sweeper
    sweeper.start()
    logger.info(f"Chat relay ready on port {settings.PORT}")

    yield

    await sweeper.stop()
    await registry.close_all()
    logger.info("Chat relay stopped")


app = FastAPI(
    title="Chat Relay",
    description="Real-time chat relay with bounded history and timed retention",
    version="1.0.0",
    lifespan=lifespan,
)

# Add request logging middleware
app.add_middleware(RequestLoggingMiddleware)


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
async def health_ready(request: Request, response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if the message store is reachable.
    Otherwise returns 503 (Service Unavailable).
    """
    store = request.app.state.store
    if not await run_in_threadpool(store.ping):
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Message store not reachable or schema not applied"
        )
    return HealthResponse(status="ready")


# =============================================================================
# Presence Route
# =============================================================================

@app.get("/api/online-users", response_model=OnlineUsersResponse)
async def online_users(request: Request) -> OnlineUsersResponse:
    """Number of currently connected chat sessions."""
    count = request.app.state.presence.count()
    logger.debug(f"GET /api/online-users: {count}")
    return OnlineUsersResponse(count=count)


# =============================================================================
# Chat WebSocket
# =============================================================================

@app.websocket("/ws")
async def chat_socket(websocket: WebSocket) -> None:
    """
    Bidirectional chat channel.

    On connect the session receives a "chat history" event; afterwards every
    text frame is handed to the relay. Binary frames are answered with an
    "error" event.
    """
    await websocket.accept()
    registry: SessionRegistry = websocket.app.state.registry
    relay: RelayManager = websocket.app.state.relay

    session = registry.open(websocket)
    with log_context(session_id=session.id):
        try:
            await relay.on_connect(session)
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                raw = message.get("text")
                if raw is None:
                    registry.send(session, EVENT_ERROR, ERROR_MALFORMED_EVENT)
                    continue
                await relay.handle_frame(session, raw)
        except WebSocketDisconnect:
            pass
        finally:
            await registry.close(session)


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.

    Includes HTTP request counts and latency, chat message outcomes, sweep
    outcomes and the connected session gauge.
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
