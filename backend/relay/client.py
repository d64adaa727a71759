"""
Peer Client: the joining side of one relay connection.

Sends connect/message/disconnect requests to a remote Relay Server and runs
a small inbox endpoint so the host can fan other peers' messages back.
"""

import asyncio
import logging

import httpx
from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError

from config import REQUEST_TIMEOUT
from discovery.models import PeerRecord, http_base_url
from errors import ConnectionFailed, DeliveryError
from relay.endpoint import HttpEndpoint
from relay.models import MessageEnvelope, RelayResult
from relay.server import validation_error_handler

logger = logging.getLogger(__name__)


class PeerClient:
    """Connection to exactly one remote relay."""

    def __init__(
        self,
        inbox_host: str = "0.0.0.0",
        inbox_port: int = 0,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = REQUEST_TIMEOUT,
    ) -> None:
        self._inbox_host = inbox_host
        self._inbox_port = inbox_port
        self._timeout = timeout
        self._http_client = http_client
        self._owns_client = http_client is None
        self._inbox: HttpEndpoint | None = None
        self._target_url: str | None = None
        self._self_record: PeerRecord | None = None
        self._send_lock = asyncio.Lock()
        self._event_callbacks: list = []  # async fn(event_type, data)
        self.app = self._build_app()

    def _build_app(self) -> FastAPI:
        app = FastAPI(title="LAN Chat Inbox", docs_url=None, redoc_url=None)
        app.state.client = self
        app.add_exception_handler(RequestValidationError, validation_error_handler)
        app.include_router(router)
        return app

    @property
    def is_connected(self) -> bool:
        return self._target_url is not None

    @property
    def self_record(self) -> PeerRecord | None:
        """The record the host knows us by (address plus inbox port)."""
        return self._self_record

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

    async def _post(self, url: str, body) -> httpx.Response:
        return await self._client().post(
            url,
            content=body.model_dump_json(),
            headers={"Content-Type": "application/json"},
        )

    async def connect(self, address: str, port: int, self_record: PeerRecord) -> None:
        """Register with the relay at address:port.

        Raises ConnectionFailed on any transport error or non-2xx answer, in
        which case nothing is left running.
        """
        if self.is_connected:
            await self.disconnect()

        inbox = HttpEndpoint(self.app, self._inbox_host, self._inbox_port)
        try:
            await inbox.start()
        except OSError as e:
            raise ConnectionFailed(f"Could not open inbox: {e}") from e

        record = self_record.model_copy(update={"port": inbox.port})
        target_url = http_base_url(address, port)
        try:
            resp = await self._post(f"{target_url}/connect", record)
        except httpx.HTTPError as e:
            await inbox.stop()
            raise ConnectionFailed(
                f"Could not reach relay at {address}:{port}: {e}",
                details={"address": address, "port": port},
            ) from e
        if not resp.is_success:
            await inbox.stop()
            raise ConnectionFailed(
                f"Relay at {address}:{port} refused connection: HTTP {resp.status_code}",
                details={"address": address, "port": port, "status": resp.status_code},
            )

        self._inbox = inbox
        self._target_url = target_url
        self._self_record = record
        logger.info(f"Connected to relay at {address}:{port} (inbox port {inbox.port})")
        await self._emit("connected", {"address": address, "port": port})

    async def send(self, envelope: MessageEnvelope) -> None:
        """Deliver one envelope to the relay. Never retried."""
        if not self.is_connected:
            raise DeliveryError("Not connected to a relay")

        # Serialized so the relay receives envelopes in the order they were sent
        async with self._send_lock:
            try:
                resp = await self._post(f"{self._target_url}/message", envelope)
            except httpx.HTTPError as e:
                raise DeliveryError(
                    f"Message {envelope.id} not delivered: {e}",
                    details={"message_id": str(envelope.id)},
                ) from e
        if not resp.is_success:
            raise DeliveryError(
                f"Message {envelope.id} rejected: HTTP {resp.status_code}",
                details={"message_id": str(envelope.id), "status": resp.status_code},
            )

    async def disconnect(self, self_record: PeerRecord | None = None) -> None:
        """Best-effort goodbye to the relay; always ends up disconnected."""
        record = self_record or self._self_record
        target_url = self._target_url
        self._target_url = None

        if target_url and record:
            try:
                resp = await self._post(f"{target_url}/disconnect", record)
                if not resp.is_success:
                    logger.warning(f"Relay answered disconnect with HTTP {resp.status_code}")
            except httpx.HTTPError as e:
                logger.warning(f"Disconnect notification failed: {e}")

        if self._inbox:
            await self._inbox.stop()
            self._inbox = None
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None
        self._self_record = None

        if target_url:
            logger.info("Disconnected from relay")
            await self._emit("disconnected", None)

    async def handle_inbound(self, envelope: MessageEnvelope) -> RelayResult:
        await self._emit("message", envelope)
        return RelayResult(status="received")


# --- Inbox routes ---

router = APIRouter()


def get_client(request: Request) -> PeerClient:
    return request.app.state.client


@router.post("/message", response_model=RelayResult)
async def inbound_message(envelope: MessageEnvelope, client: PeerClient = Depends(get_client)):
    return await client.handle_inbound(envelope)
