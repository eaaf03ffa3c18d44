"""
Command normalizer - maps transport messages to ``Command`` values and
``Result`` values back to each transport's reply shape.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple, Union

from loguru import logger
from pydantic import ValidationError
from pydantic_core import PydanticSerializationError

from .errors import BadInputError
from .protocol import (
    ChannelEnvelope,
    ChannelFrame,
    ChannelMessageType,
    Command,
    ErrorKind,
    OriginKind,
    Result,
)

RawMessage = Union[str, bytes, bytearray, Dict[str, Any]]

HTTP_STATUS_BY_KIND = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.UNAUTHORIZED: 401,
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.BAD_INPUT: 400,
}

# Frame types that carry a command, and the reply type each one gets
REPLY_TYPES = {
    ChannelMessageType.COMMAND: ChannelMessageType.COMMAND_RESPONSE,
    ChannelMessageType.CHAT: ChannelMessageType.CHAT_RESPONSE,
}


def http_status_for(result: Result) -> int:
    if result.success:
        return 200
    return HTTP_STATUS_BY_KIND.get(result.error.kind, 500)


@dataclass(frozen=True)
class HttpReply:
    status_code: int
    body: Dict[str, Any]


@dataclass(frozen=True)
class InboundFrame:
    """A parsed channel frame; ``command`` is set for command-carrying types."""
    type: ChannelMessageType
    frame_id: Optional[str] = None
    command: Optional[Command] = None


class FrameError(BadInputError):
    """Malformed channel frame; keeps the frame id (if readable) for the reply."""

    def __init__(self, message: str, frame_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.frame_id = frame_id


def _is_empty(raw: Optional[RawMessage]) -> bool:
    if raw is None:
        return True
    if isinstance(raw, dict):
        return False
    return not raw.strip()


def _decode(raw: RawMessage) -> Dict[str, Any]:
    if isinstance(raw, dict):
        data = raw
    else:
        if isinstance(raw, (bytes, bytearray)):
            try:
                raw = raw.decode("utf-8")
            except UnicodeDecodeError as e:
                raise BadInputError(f"Body is not valid UTF-8: {e}") from e
        if not raw or not raw.strip():
            raise BadInputError("Empty message")
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise BadInputError(f"Invalid JSON: {e.msg}") from e
    if not isinstance(data, dict):
        raise BadInputError("Message must be a JSON object")
    return data


def _require_name(name: Any) -> str:
    if not isinstance(name, str) or not name.strip():
        raise BadInputError("Field 'name' is required and must be a non-empty string")
    return name.strip()


def _require_parameters(parameters: Any) -> Dict[str, Any]:
    if parameters is None:
        return {}
    if not isinstance(parameters, dict):
        raise BadInputError("Field 'parameters' must be an object")
    return parameters


class CommandNormalizer:
    """Stateless translator between wire shapes and the command model."""

    def parse_request(
        self,
        raw_body: RawMessage,
        origin_id: str = "",
        name: Optional[str] = None,
        name_field: str = "name",
    ) -> Command:
        """Parse a request/response body ``{"name", "parameters"}``.

        With ``name`` given (fixed-purpose endpoints) the whole body is the
        parameter object and may be empty. ``name_field`` lets an endpoint
        carry the command name under another key. Raises ``BadInputError``
        for anything that cannot become a Command.
        """
        if name is not None:
            parameters = {} if _is_empty(raw_body) else _decode(raw_body)
            return self.build_command(name, parameters, OriginKind.REQUEST, origin_id)

        data = _decode(raw_body)
        return self.build_command(
            data.get(name_field),
            data.get("parameters"),
            OriginKind.REQUEST,
            origin_id,
        )

    def build_command(
        self,
        name: Any,
        parameters: Any,
        origin_kind: OriginKind,
        origin_id: str,
    ) -> Command:
        return Command(
            name=_require_name(name),
            parameters=_require_parameters(parameters),
            origin_kind=origin_kind,
            origin_id=origin_id,
        )

    def parse_channel_frame(self, raw_frame: RawMessage, origin_id: str) -> InboundFrame:
        try:
            data = _decode(raw_frame)
        except BadInputError as e:
            raise FrameError(e.message) from e

        frame_id = data.get("id")
        frame_id = str(frame_id) if frame_id is not None else None
        try:
            frame = ChannelFrame(**data)
        except ValidationError as e:
            raise FrameError(f"Invalid frame: {e.errors()[0].get('msg')}", frame_id) from e

        try:
            frame_type = ChannelMessageType(frame.type)
        except ValueError:
            frame_type = None
        if frame_type == ChannelMessageType.PING:
            return InboundFrame(type=frame_type, frame_id=frame_id)
        if frame_type not in REPLY_TYPES:
            raise FrameError(f"Unknown message type: {frame.type}", frame_id)

        try:
            if frame_type == ChannelMessageType.CHAT:
                command = self._chat_command(frame, origin_id)
            else:
                command = self.build_command(
                    frame.name, frame.parameters, OriginKind.CHANNEL, origin_id
                )
        except BadInputError as e:
            raise FrameError(e.message, frame_id) from e
        return InboundFrame(type=frame_type, frame_id=frame_id, command=command)

    def _chat_command(self, frame: ChannelFrame, origin_id: str) -> Command:
        data = frame.data
        if isinstance(data, str):
            parameters = {"message": data}
        elif isinstance(data, dict):
            parameters = data
        else:
            raise BadInputError("Chat frame requires 'data' with the message text")
        return self.build_command("chat", parameters, OriginKind.CHANNEL, origin_id)

    # ============ Outbound ============

    def _wire(self, result: Result) -> Tuple[Result, Dict[str, Any]]:
        """Serialize ``result`` once; an unserializable payload becomes an INTERNAL failure."""
        try:
            return result, result.to_wire()
        except (PydanticSerializationError, TypeError, ValueError) as e:
            logger.error("Result payload is not serializable: {}", e)
            failed = Result.fail(
                ErrorKind.INTERNAL, "Result payload is not serializable", result.elapsed_ms
            )
            return failed, failed.to_wire()

    def format_http(self, result: Result) -> HttpReply:
        result, body = self._wire(result)
        return HttpReply(status_code=http_status_for(result), body=body)

    def format_channel(
        self,
        result: Result,
        reply_type: ChannelMessageType = ChannelMessageType.COMMAND_RESPONSE,
        frame_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Wrap a result in an envelope; failed results always use the ``error`` type."""
        result, body = self._wire(result)
        envelope_type = reply_type if result.success else ChannelMessageType.ERROR
        envelope = ChannelEnvelope(type=envelope_type, id=frame_id).to_wire()
        envelope["data"] = body
        return envelope

    def format_result(
        self,
        result: Result,
        origin_kind: OriginKind,
        reply_type: ChannelMessageType = ChannelMessageType.COMMAND_RESPONSE,
        frame_id: Optional[str] = None,
    ) -> Union[HttpReply, Dict[str, Any]]:
        if origin_kind == OriginKind.REQUEST:
            return self.format_http(result)
        return self.format_channel(result, reply_type, frame_id)

    def pong(self, frame_id: Optional[str] = None) -> Dict[str, Any]:
        return ChannelEnvelope(type=ChannelMessageType.PONG, id=frame_id).to_wire()

    def welcome(self, connection_id: str) -> Dict[str, Any]:
        return ChannelEnvelope(type=ChannelMessageType.WELCOME, connection_id=connection_id).to_wire()

    def heartbeat(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return ChannelEnvelope(type=ChannelMessageType.HEARTBEAT, data=payload).to_wire()
