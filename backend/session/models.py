"""Pydantic models for the local chat session."""

from enum import Enum

from pydantic import BaseModel, ConfigDict


class ConnectionRole(str, Enum):
    """The single active role of this device."""
    IDLE = "idle"
    HOSTING = "hosting"
    CONNECTED = "connected"


class ConnectionState(BaseModel):
    """Snapshot of the session, exposed to the presentation layer."""
    model_config = ConfigDict(frozen=True)

    local_identity: str = ""
    role: ConnectionRole = ConnectionRole.IDLE
    peer_identity: str = ""  # set while connected, or while hosting with a peer
    discovering: bool = False
    last_error: str | None = None
