"""Pydantic models for peer discovery."""

import ipaddress

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from config import APP_TAG


class PeerRecord(BaseModel):
    """A discoverable user on the LAN: who they are and where their endpoint listens."""
    model_config = ConfigDict(frozen=True)

    identity: str = Field(min_length=1)
    address: str
    port: int = Field(ge=0, le=65535)

    @field_validator("address")
    @classmethod
    def _check_address(cls, value: str) -> str:
        return str(ipaddress.ip_address(value))

    @property
    def base_url(self) -> str:
        return http_base_url(self.address, self.port)


def http_base_url(address: str, port: int) -> str:
    host = f"[{address}]" if ":" in address else address
    return f"http://{host}:{port}"


def encode_beacon(record: PeerRecord) -> bytes:
    """Serialize a record into the tagged datagram payload."""
    return (APP_TAG + record.model_dump_json()).encode("utf-8")


def decode_beacon(data: bytes) -> PeerRecord | None:
    """Parse a datagram; returns None for anything that is not a valid beacon."""
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError:
        return None
    if not text.startswith(APP_TAG):
        return None
    try:
        return PeerRecord.model_validate_json(text[len(APP_TAG):])
    except ValidationError:
        return None
