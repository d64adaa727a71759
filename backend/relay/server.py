"""
Relay Server: the hosting side's HTTP endpoint.

Accepts connect/message/disconnect requests from peers, keeps the
connected-peer registry, and fans every accepted message out to all other
connected peers.
"""

import asyncio
import logging

import httpx
from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from config import RELAY_HOST, RELAY_PORT, REQUEST_TIMEOUT
from discovery.models import PeerRecord
from errors import RelayError
from relay.endpoint import HttpEndpoint
from relay.models import MessageEnvelope, RelayResult
from relay.registry import PeerRegistry

logger = logging.getLogger(__name__)


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Answer malformed bodies with an explicit error result instead of dropping the connection."""
    detail = "; ".join(
        f"{'.'.join(str(part) for part in err.get('loc', ()))}: {err.get('msg')}"
        for err in exc.errors()
    )
    logger.warning(f"Rejected malformed {request.url.path} request: {detail}")
    return JSONResponse(
        status_code=422,
        content=RelayResult(status="error", detail=detail).model_dump(),
    )


class RelayServer:
    """Hosts a chat: registry of connected peers plus message fan-out.

    Accepted messages are queued per sender and fanned out by one worker task
    per sender, so a sender never waits on a slow destination and its
    messages still leave in the order they arrived.
    """

    def __init__(
        self,
        host: str = RELAY_HOST,
        port: int = RELAY_PORT,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = REQUEST_TIMEOUT,
    ) -> None:
        self.registry = PeerRegistry()
        self._host = host
        self._port = port
        self._timeout = timeout
        self._http_client = http_client
        self._owns_client = http_client is None
        self._endpoint: HttpEndpoint | None = None
        self._queues: dict[str, asyncio.Queue] = {}
        self._workers: dict[str, asyncio.Task] = {}
        self._event_callbacks: list = []  # async fn(event_type, data)
        self.app = self._build_app()

    def _build_app(self) -> FastAPI:
        app = FastAPI(title="LAN Chat Relay", docs_url=None, redoc_url=None)
        app.state.relay = self
        app.add_exception_handler(RequestValidationError, validation_error_handler)
        app.include_router(router)
        return app

    @property
    def port(self) -> int:
        return self._endpoint.port if self._endpoint else self._port

    @property
    def is_running(self) -> bool:
        return self._endpoint is not None and self._endpoint.is_running

    def on_event(self, callback) -> None:
        """Register callback: async fn(event_type: str, data)."""
        self._event_callbacks.append(callback)

    async def _emit(self, event_type: str, data) -> None:
        for cb in self._event_callbacks:
            try:
                await cb(event_type, data)
            except Exception as e:
                logger.error(f"Event callback error: {e}")

    def _client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout, trust_env=False)
        return self._http_client

    async def start(self) -> None:
        """Bind the relay port and start serving."""
        if self.is_running:
            return
        endpoint = HttpEndpoint(self.app, self._host, self._port)
        try:
            await endpoint.start()
        except OSError as e:
            raise RelayError(f"Could not start relay on port {self._port}: {e}") from e
        self._endpoint = endpoint
        logger.info(f"Relay server listening on {self._host}:{endpoint.port}")

    async def stop(self) -> None:
        """Release the port, drop queued fan-out and forget every connected peer."""
        workers = list(self._workers.values())
        for task in workers:
            task.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        self._workers.clear()
        self._queues.clear()
        if self._endpoint:
            await self._endpoint.stop()
            self._endpoint = None
            logger.info("Relay server stopped")
        await self.registry.clear()
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    # --- Request handlers ---

    async def handle_connect(self, record: PeerRecord, source: str | None = None) -> RelayResult:
        if source and source != record.address:
            # Fan-out goes back to the address the request came from
            try:
                record = PeerRecord(identity=record.identity, address=source, port=record.port)
            except ValidationError:
                logger.debug(f"Keeping advertised address of {record.identity}, source {source} is not an IP")
        is_new = await self.registry.add(record)
        if is_new:
            logger.info(f"Peer connected: {record.identity} ({record.address}:{record.port})")
        else:
            logger.info(f"Peer reconnected: {record.identity} ({record.address}:{record.port})")
        await self._emit("peer_connected", record)
        return RelayResult(status="connected")

    async def handle_message(self, envelope: MessageEnvelope) -> RelayResult:
        await self._emit("message", envelope)
        self.submit(envelope)
        return RelayResult(status="accepted")

    async def handle_disconnect(self, record: PeerRecord) -> RelayResult:
        removed = await self.registry.remove(record.identity)
        if removed:
            logger.info(f"Peer disconnected: {record.identity}")
        await self._emit("peer_disconnected", record)
        return RelayResult(status="disconnected")

    # --- Fan-out ---

    def submit(self, envelope: MessageEnvelope) -> None:
        """Queue an envelope for fan-out behind earlier ones from the same sender."""
        queue = self._queues.get(envelope.sender)
        if queue is None:
            queue = self._queues[envelope.sender] = asyncio.Queue()
            self._workers[envelope.sender] = asyncio.create_task(
                self._fan_out_worker(queue)
            )
        queue.put_nowait(envelope)

    async def join(self) -> None:
        """Wait until every queued envelope has been fanned out."""
        await asyncio.gather(*(queue.join() for queue in list(self._queues.values())))

    async def _fan_out_worker(self, queue: asyncio.Queue) -> None:
        while True:
            envelope = await queue.get()
            try:
                failed = await self.broadcast(envelope)
                if failed:
                    await self._emit(
                        "delivery_failed", {"message_id": str(envelope.id), "failed": failed}
                    )
            except Exception as e:
                logger.error(f"Fan-out of message {envelope.id} failed: {e}")
            finally:
                queue.task_done()

    async def broadcast(self, envelope: MessageEnvelope) -> list[str]:
        """Send an envelope to every connected peer except its sender.

        Returns the identities that could not be reached; one failing
        destination never prevents delivery to the others.
        """
        targets = await self.registry.snapshot(exclude=envelope.sender)
        if not targets:
            return []

        results = await asyncio.gather(
            *(self._deliver(peer, envelope) for peer in targets)
        )
        failed = [peer.identity for peer, ok in zip(targets, results) if not ok]
        if failed:
            logger.warning(f"Message {envelope.id} not delivered to: {', '.join(failed)}")
        return failed

    async def _deliver(self, peer: PeerRecord, envelope: MessageEnvelope) -> bool:
        try:
            resp = await self._client().post(
                f"{peer.base_url}/message",
                content=envelope.model_dump_json(),
                headers={"Content-Type": "application/json"},
            )
        except httpx.HTTPError as e:
            logger.debug(f"Delivery to {peer.identity} failed: {e}")
            return False
        if not resp.is_success:
            logger.debug(f"Delivery to {peer.identity} rejected: HTTP {resp.status_code}")
            return False
        return True


# --- Routes ---

router = APIRouter()


def get_relay(request: Request) -> RelayServer:
    return request.app.state.relay


@router.post("/connect", response_model=RelayResult)
async def connect(
    record: PeerRecord, request: Request, relay: RelayServer = Depends(get_relay)
):
    source = request.client.host if request.client else None
    return await relay.handle_connect(record, source)


@router.post("/message", response_model=RelayResult)
async def message(envelope: MessageEnvelope, relay: RelayServer = Depends(get_relay)):
    return await relay.handle_message(envelope)


@router.post("/disconnect", response_model=RelayResult)
async def disconnect(record: PeerRecord, relay: RelayServer = Depends(get_relay)):
    return await relay.handle_disconnect(record)
