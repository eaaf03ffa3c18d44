"""
Agent gateway: one dispatch contract behind HTTP and WebSocket transports.
"""
from .protocol import (
    ChannelMessageType,
    Command,
    ErrorInfo,
    ErrorKind,
    EventType,
    OriginKind,
    Result,
)
from .errors import GatewayError, HandlerConflictError
from .dispatcher import Dispatcher
from .connection import ConnectionRegistry
from .normalizer import CommandNormalizer
from .policy import PolicyLayer
from .events import EventEmitter
from .server import GatewayServer

__all__ = [
    'ChannelMessageType',
    'Command',
    'ErrorInfo',
    'ErrorKind',
    'EventType',
    'OriginKind',
    'Result',
    'GatewayError',
    'HandlerConflictError',
    'Dispatcher',
    'ConnectionRegistry',
    'CommandNormalizer',
    'PolicyLayer',
    'EventEmitter',
    'GatewayServer',
]
