from __future__ import annotations

from .protocol import ErrorKind, Result


class GatewayError(Exception):
    """Error carrying a taxonomy kind; converted to a failed Result at the boundary."""

    def __init__(self, kind: ErrorKind, message: str = "") -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message

    def to_result(self, elapsed_ms: float = 0.0) -> Result:
        return Result.fail(self.kind, self.message, elapsed_ms=elapsed_ms)


class BadInputError(GatewayError):
    def __init__(self, message: str) -> None:
        super().__init__(ErrorKind.BAD_INPUT, message)


class HandlerConflictError(ValueError):
    """A capability name is already registered and no override was requested."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Handler already registered: {name}")
        self.name = name
