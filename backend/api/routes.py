"""REST API routes for the local chat UI."""

import logging

from fastapi import APIRouter, BackgroundTasks, HTTPException
from pydantic import BaseModel, Field, ValidationError

from discovery.models import PeerRecord
from errors import LanChatError, StateError
from relay.models import MessageKind

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

# Injected by main.py at startup
_coordinator = None


def init_routes(coordinator) -> None:
    """Inject the session coordinator into the routes module."""
    global _coordinator
    _coordinator = coordinator


def _http_error(e: LanChatError) -> HTTPException:
    status = 409 if isinstance(e, StateError) else 502
    return HTTPException(status_code=status, detail={"code": e.code, "message": str(e)})


# --- Streams ---

@router.get("/state")
async def get_state():
    return _coordinator.state.model_dump(mode="json")


@router.get("/messages")
async def list_messages():
    return {"messages": [m.model_dump(mode="json") for m in _coordinator.messages]}


@router.get("/peers")
async def list_peers():
    """Return the result of the last discovery run."""
    return {"peers": [p.model_dump() for p in _coordinator.peers]}


# --- Identity ---

class IdentityBody(BaseModel):
    name: str = Field(min_length=1)


@router.put("/identity")
async def set_identity(body: IdentityBody):
    try:
        await _coordinator.set_identity(body.name)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except LanChatError as e:
        raise _http_error(e)
    return _coordinator.state.model_dump(mode="json")


# --- Roles ---

@router.post("/host")
async def start_hosting():
    try:
        await _coordinator.start_hosting()
    except LanChatError as e:
        raise _http_error(e)
    return _coordinator.state.model_dump(mode="json")


class DiscoverBody(BaseModel):
    timeout: float | None = Field(default=None, gt=0)


async def _run_discovery(timeout: float | None) -> None:
    try:
        if timeout is None:
            await _coordinator.discover()
        else:
            await _coordinator.discover(timeout)
    except LanChatError as e:
        logger.warning(f"Discovery failed: {e}")


@router.post("/discover", status_code=202)
async def discover(background_tasks: BackgroundTasks, body: DiscoverBody | None = None):
    """Start a discovery window; the result arrives as a `peers` event."""
    if _coordinator.state.discovering:
        raise HTTPException(status_code=409, detail="Discovery already in progress")
    background_tasks.add_task(_run_discovery, body.timeout if body else None)
    return {"status": "discovering"}


@router.post("/discover/cancel")
async def cancel_discovery():
    _coordinator.cancel_discovery()
    return {"status": "cancelled"}


class ConnectBody(BaseModel):
    identity: str = Field(min_length=1)
    address: str | None = None
    port: int | None = None


@router.post("/connect")
async def connect(body: ConnectBody):
    """Connect to a discovered peer, or to an explicit address/port."""
    if body.address is not None and body.port is not None:
        try:
            peer = PeerRecord(identity=body.identity, address=body.address, port=body.port)
        except ValidationError as e:
            raise HTTPException(status_code=422, detail=str(e))
    else:
        peer = next((p for p in _coordinator.peers if p.identity == body.identity), None)
        if not peer:
            raise HTTPException(status_code=404, detail="Peer not found")

    try:
        await _coordinator.connect_to(peer)
    except LanChatError as e:
        raise _http_error(e)
    return _coordinator.state.model_dump(mode="json")


@router.post("/disconnect")
async def disconnect():
    await _coordinator.disconnect()
    return _coordinator.state.model_dump(mode="json")


# --- Messages ---

class SendBody(BaseModel):
    content: str = Field(min_length=1)
    kind: MessageKind = MessageKind.TEXT


@router.post("/messages")
async def send_message(body: SendBody):
    try:
        envelope = await _coordinator.send(body.content, body.kind)
    except LanChatError as e:
        raise _http_error(e)
    return envelope.model_dump(mode="json")
