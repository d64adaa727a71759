"""
LAN Chat: FastAPI application entry point.

Creates the Session Coordinator on startup, serves the local REST API and
WebSocket event stream for the chat UI, and tears the network layer down on
shutdown.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from api.routes import init_routes, router
from api.websocket import ConnectionManager
from config import API_HOST, API_PORT, DEVICE_NAME
from session.coordinator import SessionCoordinator

# --- Logging ---
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# --- Service singletons ---
coordinator = SessionCoordinator(identity=DEVICE_NAME)
ws_manager = ConnectionManager()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Wire events on startup, stop all networking on shutdown."""
    logger.info("Starting LAN Chat...")
    coordinator.on_event(ws_manager.handle_event)
    logger.info(f"LAN Chat ready as {coordinator.state.local_identity} (UI API: {API_HOST}:{API_PORT})")
    try:
        yield
    finally:
        logger.info("Shutting down LAN Chat...")
        await coordinator.teardown()


# --- FastAPI app ---
app = FastAPI(
    title="LAN Chat",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:5173", "http://127.0.0.1:5173",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Inject services into routes
init_routes(coordinator)
app.include_router(router)


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    await ws_manager.connect(websocket)
    try:
        # Current values first so a fresh UI does not wait for the next change
        await ws_manager.send(websocket, "state", coordinator.state)
        await ws_manager.send(websocket, "messages", list(coordinator.messages))
        await ws_manager.send(websocket, "peers", list(coordinator.peers))
        while True:
            # Keep the connection alive; we don't expect client messages
            await websocket.receive_text()
    except WebSocketDisconnect:
        await ws_manager.disconnect(websocket)
    except Exception:
        await ws_manager.disconnect(websocket)


def run() -> None:
    import uvicorn

    uvicorn.run(
        app,
        host=API_HOST,
        port=API_PORT,
        log_level="info",
    )


if __name__ == "__main__":
    run()
