"""
Market Data Terminal Engine - FastAPI Application

Main entry point for the engine process.
Provides the session control API and a WebSocket endpoint that forwards
session events to the terminal UI.
"""

from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

from fastapi import Depends, FastAPI, Query, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from mdt_engine import __version__
from mdt_engine.api.session_routes import (
    get_notification_log,
    get_session_manager,
)
from mdt_engine.api.session_routes import router as session_router
from mdt_engine.config import Settings, get_settings, get_settings_dep
from mdt_engine.logging import get_in_memory_logs, get_logger, setup_logging
from mdt_engine.runtime.event_bus import Event, EventType, get_event_bus

# Setup logging
setup_logging(level=get_settings().log_level, json_output=get_settings().log_json)
logger = get_logger(__name__)

# Session events forwarded to UI clients
FORWARDED_EVENTS = (
    EventType.CONNECTION_STATUS_CHANGED,
    EventType.AUTH_STATUS_CHANGED,
    EventType.SUBSCRIPTIONS_CHANGED,
    EventType.NOTIFICATION,
    EventType.MARKET_DATA_UPDATED,
    EventType.MARKET_DATA_REMOVED,
)


# =============================================================================
# Response Models
# =============================================================================


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    time: str
    uptime_seconds: float
    connection_status: str
    auth_status: str


class ConfigResponse(BaseModel):
    """Configuration response (redacted)."""

    env: str
    data_dir: str
    state_file: str
    ws_url: str
    auto_login_delay_ms: int
    auto_connect_on_start: bool


# =============================================================================
# Application State
# =============================================================================


class AppState:
    """Application state container."""

    def __init__(self) -> None:
        self.start_time: datetime = datetime.now(UTC)
        self.websocket_clients: list[WebSocket] = []


state = AppState()


async def broadcast(message: dict[str, Any]) -> None:
    """Send a message to every connected UI client, dropping dead ones."""
    disconnected: list[WebSocket] = []
    for ws in state.websocket_clients:
        try:
            await ws.send_json(message)
        except Exception:
            disconnected.append(ws)
    for ws in disconnected:
        if ws in state.websocket_clients:
            state.websocket_clients.remove(ws)


async def forward_session_events(event: Event) -> None:
    """Forward session events to WebSocket clients."""
    if event.type in FORWARDED_EVENTS:
        await broadcast(event.to_message())


# =============================================================================
# Lifecycle
# =============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    settings = get_settings()
    # Startup
    logger.info(
        "Starting Market Data Terminal Engine v%s (%s)",
        __version__,
        settings.env.value,
    )
    logger.info("Data directory: %s", settings.data_dir)
    logger.info("Server: http://%s:%d", settings.host, settings.port)
    logger.debug("Configuration: %s", settings.get_redacted_config())

    event_bus = get_event_bus()
    notification_log = get_notification_log()
    await event_bus.subscribe(EventType.NOTIFICATION, notification_log.record)
    for event_type in FORWARDED_EVENTS:
        await event_bus.subscribe(event_type, forward_session_events)

    manager = get_session_manager()
    manager.restore()

    await event_bus.publish(Event(type=EventType.ENGINE_STARTED))

    if settings.auto_connect_on_start and manager.should_auto_connect():
        logger.info("Previous session was logged in; reconnecting")
        await manager.connect()

    yield

    # Shutdown
    logger.info("Shutting down Market Data Terminal Engine")

    await manager.dispose()

    for event_type in FORWARDED_EVENTS:
        await event_bus.unsubscribe(event_type, forward_session_events)
    await event_bus.unsubscribe(EventType.NOTIFICATION, notification_log.record)

    # Close all WebSocket connections
    for ws in list(state.websocket_clients):
        try:
            await ws.close()
        except Exception:
            pass
    state.websocket_clients.clear()

    # Publish shutdown event
    await event_bus.publish(Event(type=EventType.ENGINE_STOPPED))


# =============================================================================
# FastAPI Application
# =============================================================================


app = FastAPI(
    title="Market Data Terminal Engine",
    description="Streaming market data session manager",
    version=__version__,
    lifespan=lifespan,
)

# CORS middleware - only allow localhost
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API routers
app.include_router(session_router)


# =============================================================================
# REST Endpoints
# =============================================================================


@app.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    """
    Health check endpoint.

    Returns current status, version, uptime and session state.
    """
    now = datetime.now(UTC)
    uptime = (now - state.start_time).total_seconds()
    manager = get_session_manager()

    return HealthResponse(
        status="healthy",
        version=__version__,
        time=now.isoformat(),
        uptime_seconds=round(uptime, 2),
        connection_status=manager.connection_status.value,
        auth_status=manager.auth_status.value,
    )


@app.get("/config", response_model=ConfigResponse)
async def config(
    settings: Settings = Depends(get_settings_dep)
) -> ConfigResponse:
    """
    Get current configuration (redacted).

    Credentials are not exposed.
    """
    return ConfigResponse(
        env=settings.env.value,
        data_dir=str(settings.data_dir),
        state_file=str(settings.resolved_state_file),
        ws_url=settings.ws_url,
        auto_login_delay_ms=settings.auto_login_delay_ms,
        auto_connect_on_start=settings.auto_connect_on_start,
    )


@app.get("/logs")
async def logs(
    level: str = Query("INFO", description="Minimum level"),
    limit: int = Query(50, ge=1, le=1000, description="Most recent entries to return"),
    connection_id: str | None = Query(None, description="Only lines for this connection"),
) -> dict[str, Any]:
    """Recent engine log lines kept in memory."""
    entries = get_in_memory_logs(level=level, limit=limit, connection_id=connection_id)
    return {"logs": entries, "count": len(entries)}


@app.get("/")
async def root() -> dict[str, Any]:
    """Root endpoint with API info."""
    return {
        "name": "Market Data Terminal Engine",
        "version": __version__,
        "docs": "/docs",
        "health": "/health",
        "session": "/session/status",
    }


# =============================================================================
# WebSocket Endpoint
# =============================================================================


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket) -> None:
    """
    WebSocket endpoint for real-time updates.

    Streams:
    - Connection/auth status changes
    - Subscription changes
    - Notifications (sent/received/error/success/info)
    - Market record updates
    """
    await websocket.accept()
    state.websocket_clients.append(websocket)
    logger.info("WebSocket client connected. Total clients: %d", len(state.websocket_clients))

    try:
        # Send welcome message with current session state
        snapshot = get_session_manager().snapshot()
        await websocket.send_json(
            {
                "type": "connected",
                "version": __version__,
                "session": snapshot.model_dump(mode="json", by_alias=True),
                "timestamp": datetime.now(UTC).isoformat(),
            }
        )

        # Keep connection alive and handle incoming messages
        while True:
            try:
                data = await websocket.receive_json()
                await handle_ws_message(websocket, data)
            except WebSocketDisconnect:
                break

    finally:
        if websocket in state.websocket_clients:
            state.websocket_clients.remove(websocket)
        logger.info(
            "WebSocket client disconnected. Total clients: %d",
            len(state.websocket_clients),
        )


async def handle_ws_message(websocket: WebSocket, data: dict[str, Any]) -> None:
    """
    Handle incoming WebSocket messages.

    Args:
        websocket: WebSocket connection
        data: Message data
    """
    msg_type = data.get("type")

    if msg_type == "ping":
        await websocket.send_json(
            {
                "type": "pong",
                "timestamp": datetime.now(UTC).isoformat(),
            }
        )
    elif msg_type == "status":
        snapshot = get_session_manager().snapshot()
        await websocket.send_json(
            {
                "type": "status",
                "session": snapshot.model_dump(mode="json", by_alias=True),
                "timestamp": datetime.now(UTC).isoformat(),
            }
        )
    else:
        logger.warning("Unknown WebSocket message type: %s", msg_type)


# =============================================================================
# Entry Point
# =============================================================================


def main() -> None:
    """Run the server."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "mdt_engine.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.env.value == "development",
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
