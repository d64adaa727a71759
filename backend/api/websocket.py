"""WebSocket handler for real-time events."""

import asyncio
import json
import logging

from fastapi import WebSocket
from pydantic import BaseModel

logger = logging.getLogger(__name__)


def to_jsonable(data):
    """Turn event payloads (models, lists of models, dicts) into JSON-ready values."""
    if isinstance(data, BaseModel):
        return data.model_dump(mode="json")
    if isinstance(data, (list, tuple)):
        return [to_jsonable(item) for item in data]
    return data


class ConnectionManager:
    """Manages WebSocket connections and broadcasts events."""

    def __init__(self) -> None:
        self._connections: list[WebSocket] = []
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        async with self._lock:
            self._connections.append(websocket)
        logger.info(f"WebSocket client connected. Total: {len(self._connections)}")

    async def disconnect(self, websocket: WebSocket) -> None:
        async with self._lock:
            if websocket in self._connections:
                self._connections.remove(websocket)
        logger.info(f"WebSocket client disconnected. Total: {len(self._connections)}")

    async def send(self, websocket: WebSocket, event: str, data) -> None:
        await websocket.send_text(json.dumps({"event": event, "data": to_jsonable(data)}))

    async def broadcast(self, event: str, data) -> None:
        """Broadcast an event to all connected WebSocket clients."""
        message = json.dumps({"event": event, "data": to_jsonable(data)})
        async with self._lock:
            dead: list[WebSocket] = []
            for ws in self._connections:
                try:
                    await ws.send_text(message)
                except Exception:
                    dead.append(ws)
            for ws in dead:
                self._connections.remove(ws)

    async def handle_event(self, event_type: str, data) -> None:
        """Event handler compatible with SessionCoordinator.on_event()."""
        await self.broadcast(event_type, data)
