"""Pydantic models for chat messages on the relay."""

import uuid
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class MessageKind(str, Enum):
    """What the envelope's content refers to."""
    TEXT = "text"
    IMAGE = "image"  # content is a path/URI
    FILE = "file"  # content is a path/URI


class MessageEnvelope(BaseModel):
    """One chat payload. Created once by the sender, never mutated afterwards."""
    model_config = ConfigDict(frozen=True)

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    sender: str = Field(min_length=1)
    content: str
    kind: MessageKind = MessageKind.TEXT
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class RelayResult(BaseModel):
    """Response body of every relay endpoint."""
    status: str
    failed: list[str] = Field(default_factory=list)
    detail: str | None = None
