"""
Gateway protocol definition - the transport independent command/result model
plus the envelope shapes used on the streaming channel.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class ErrorKind(str, Enum):
    """Error taxonomy shared by every transport."""
    NOT_FOUND = "NOT_FOUND"
    UNAUTHORIZED = "UNAUTHORIZED"
    RATE_LIMITED = "RATE_LIMITED"
    BAD_INPUT = "BAD_INPUT"
    HANDLER_FAILURE = "HANDLER_FAILURE"
    TIMEOUT = "TIMEOUT"
    INTERNAL = "INTERNAL"


class OriginKind(str, Enum):
    """Which transport a command arrived on."""
    REQUEST = "request"      # Request/response (HTTP)
    CHANNEL = "channel"      # Persistent channel (WebSocket)


class ChannelMessageType(str, Enum):
    """Discriminator carried by every channel envelope."""
    PING = "ping"
    PONG = "pong"
    COMMAND = "command"
    COMMAND_RESPONSE = "command_response"
    CHAT = "chat"
    CHAT_RESPONSE = "chat_response"
    ERROR = "error"
    WELCOME = "welcome"
    HEARTBEAT = "heartbeat"


class EventType(str, Enum):
    """Lifecycle events published on the gateway event bus."""
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    COMMAND_RECEIVED = "command.received"
    COMMAND_COMPLETED = "command.completed"
    COMMAND_FAILED = "command.failed"
    HEARTBEAT = "heartbeat"


# ============ Core model ============

class ErrorInfo(BaseModel):
    kind: ErrorKind
    message: str = ""


class Command(BaseModel):
    """One inbound request, independent of the transport it arrived on."""
    model_config = ConfigDict(frozen=True)

    name: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
    origin_kind: OriginKind = OriginKind.REQUEST
    origin_id: str = ""
    issued_at: datetime = Field(default_factory=datetime.now)


class Result(BaseModel):
    """Outcome of exactly one command."""
    model_config = ConfigDict(populate_by_name=True)

    success: bool
    payload: Optional[Any] = None
    error: Optional[ErrorInfo] = None
    elapsed_ms: float = Field(default=0.0, ge=0.0, alias="elapsedMillis")

    @classmethod
    def ok(cls, payload: Any = None, elapsed_ms: float = 0.0) -> "Result":
        return cls(success=True, payload=payload, elapsed_ms=elapsed_ms)

    @classmethod
    def fail(cls, kind: ErrorKind, message: str = "", elapsed_ms: float = 0.0) -> "Result":
        return cls(
            success=False,
            error=ErrorInfo(kind=kind, message=message),
            elapsed_ms=elapsed_ms,
        )

    def to_wire(self) -> Dict[str, Any]:
        """Outbound result envelope: camelCase, absent optionals omitted."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# ============ Streaming channel ============

class ChannelFrame(BaseModel):
    """Inbound channel frame. Only ``type`` is mandatory at this level."""
    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)

    type: str
    id: Optional[str] = None
    name: Optional[Any] = None
    parameters: Optional[Any] = None
    data: Optional[Any] = None


class ChannelEnvelope(BaseModel):
    """Outbound channel message."""
    type: ChannelMessageType
    id: Optional[str] = None
    data: Optional[Dict[str, Any]] = None
    connection_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.now)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)
