"""
Dispatcher - resolves a Command to its registered capability and runs it with
bounded latency. Every dispatch ends in exactly one Result; failures never
escape this module.
"""
from __future__ import annotations

import asyncio
import inspect
import time
from collections import Counter
from dataclasses import dataclass
from enum import Enum
from threading import Lock
from typing import Any, Callable, Dict, List, Mapping, Optional, Type

from loguru import logger
from pydantic import BaseModel, ValidationError

from .errors import GatewayError, HandlerConflictError
from .protocol import Command, ErrorKind, Result

Handler = Callable[[Command], Any]


class DispatchState(str, Enum):
    PENDING = "pending"
    RESOLVED = "resolved"
    NOT_FOUND = "not_found"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


@dataclass(frozen=True)
class HandlerRegistration:
    """A capability as registered: the callable plus its optional parameter schema.

    ``timeout_ms`` of None falls back to the dispatcher default; 0 means unbounded.
    """
    name: str
    handler: Handler
    schema: Optional[Type[BaseModel]] = None
    timeout_ms: Optional[float] = None
    description: str = ""

    @property
    def is_async(self) -> bool:
        return inspect.iscoroutinefunction(self.handler) or inspect.iscoroutinefunction(
            getattr(self.handler, "__call__", None)
        )


def _elapsed_ms(start: float) -> float:
    return max(0.0, (time.perf_counter() - start) * 1000.0)


def _first_error(e: ValidationError) -> str:
    errors = e.errors()
    if not errors:
        return str(e)
    loc = ".".join(str(p) for p in errors[0].get("loc", ()))
    msg = errors[0].get("msg", "invalid value")
    return f"{loc}: {msg}" if loc else msg


def _discard_late_outcome(task: asyncio.Future) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.debug("Late handler failure discarded after timeout: {}", exc)
    else:
        logger.debug("Late handler result discarded after timeout")


class Dispatcher:
    """Capability registry and executor shared by every transport."""

    def __init__(self, default_timeout_ms: Optional[float] = None):
        self.default_timeout_ms = default_timeout_ms
        # Replaced wholesale under the lock so readers never see a partial update
        self._handlers: Mapping[str, HandlerRegistration] = {}
        self._registration_lock = Lock()
        self.outcomes: Counter = Counter()

    # ============ Registration ============

    def register_handler(
        self,
        name: str,
        handler: Handler,
        *,
        schema: Optional[Type[BaseModel]] = None,
        timeout_ms: Optional[float] = None,
        override: bool = False,
        description: str = "",
    ) -> HandlerRegistration:
        """Register ``handler`` under ``name``.

        Raises ``HandlerConflictError`` when the name is taken and ``override`` is False.
        """
        if not isinstance(name, str) or not name.strip():
            raise ValueError("Handler name must be a non-empty string")
        if not callable(handler):
            raise TypeError(f"Handler for {name!r} is not callable")

        registration = HandlerRegistration(
            name=name,
            handler=handler,
            schema=schema,
            timeout_ms=timeout_ms,
            description=description,
        )
        with self._registration_lock:
            if name in self._handlers and not override:
                raise HandlerConflictError(name)
            handlers = dict(self._handlers)
            handlers[name] = registration
            self._handlers = handlers
        logger.info("Registered handler: {}", name)
        return registration

    def unregister_handler(self, name: str) -> bool:
        with self._registration_lock:
            if name not in self._handlers:
                return False
            handlers = dict(self._handlers)
            del handlers[name]
            self._handlers = handlers
        logger.info("Unregistered handler: {}", name)
        return True

    def get_registration(self, name: str) -> Optional[HandlerRegistration]:
        return self._handlers.get(name)

    def handler_names(self) -> List[str]:
        return sorted(self._handlers.keys())

    def describe(self) -> List[Dict[str, Any]]:
        return [
            {
                "name": reg.name,
                "description": reg.description,
                "timeout_ms": self._effective_timeout(reg, None),
                "parameters": reg.schema.model_json_schema() if reg.schema else None,
            }
            for reg in sorted(self._handlers.values(), key=lambda r: r.name)
        ]

    # ============ Dispatch ============

    def _effective_timeout(
        self, registration: HandlerRegistration, timeout_ms: Optional[float]
    ) -> Optional[float]:
        if timeout_ms is None:
            timeout_ms = registration.timeout_ms
        if timeout_ms is None:
            timeout_ms = self.default_timeout_ms
        return timeout_ms if timeout_ms and timeout_ms > 0 else None

    async def _invoke(self, registration: HandlerRegistration, command: Command) -> Any:
        if registration.is_async:
            return await registration.handler(command)
        # Sync handlers run off the event loop; on timeout the thread is abandoned
        outcome = await asyncio.to_thread(registration.handler, command)
        if inspect.isawaitable(outcome):
            outcome = await outcome
        return outcome

    async def dispatch(self, command: Command, timeout_ms: Optional[float] = None) -> Result:
        """Run ``command`` and return its single Result.

        ``timeout_ms`` overrides the registration and dispatcher defaults for this call.
        """
        start = time.perf_counter()
        try:
            result, state = await self._dispatch(command, timeout_ms, start)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Internal dispatch error for {}: {}", command.name, e)
            result = Result.fail(ErrorKind.INTERNAL, f"Internal error: {e}", _elapsed_ms(start))
            state = DispatchState.FAILED
        self.outcomes[state] += 1
        return result

    async def _dispatch(self, command: Command, timeout_ms: Optional[float], start: float):
        registration = self._handlers.get(command.name)
        if registration is None:
            return (
                Result.fail(ErrorKind.NOT_FOUND, f"Action '{command.name}' not found", _elapsed_ms(start)),
                DispatchState.NOT_FOUND,
            )

        if registration.schema is not None:
            try:
                validated = registration.schema.model_validate(command.parameters)
            except ValidationError as e:
                return (
                    Result.fail(ErrorKind.BAD_INPUT, _first_error(e), _elapsed_ms(start)),
                    DispatchState.FAILED,
                )
            command = command.model_copy(update={"parameters": validated.model_dump()})

        limit_ms = self._effective_timeout(registration, timeout_ms)
        task = asyncio.ensure_future(self._invoke(registration, command))
        try:
            done, _ = await asyncio.wait({task}, timeout=limit_ms / 1000.0 if limit_ms else None)
        except asyncio.CancelledError:
            task.cancel()
            raise

        if not done:
            # First resolution wins: the late outcome is consumed and dropped
            task.cancel()
            task.add_done_callback(_discard_late_outcome)
            logger.warning("Handler {} timed out after {}ms", command.name, limit_ms)
            return (
                Result.fail(ErrorKind.TIMEOUT, f"Handler '{command.name}' timed out after {limit_ms:g}ms", _elapsed_ms(start)),
                DispatchState.TIMED_OUT,
            )

        elapsed = _elapsed_ms(start)
        if task.cancelled():
            return Result.fail(ErrorKind.HANDLER_FAILURE, "Handler was cancelled", elapsed), DispatchState.FAILED

        exc = task.exception()
        if exc is not None:
            return self._failure_from_exception(command.name, exc, elapsed), DispatchState.FAILED

        outcome = task.result()
        if isinstance(outcome, Result):
            if outcome.success:
                return Result.ok(outcome.payload, elapsed), DispatchState.RESOLVED
            message = outcome.error.message if outcome.error else "Handler reported failure"
            return Result.fail(ErrorKind.HANDLER_FAILURE, message, elapsed), DispatchState.FAILED
        return Result.ok(outcome, elapsed), DispatchState.RESOLVED

    def _failure_from_exception(self, name: str, exc: BaseException, elapsed: float) -> Result:
        if isinstance(exc, GatewayError):
            return exc.to_result(elapsed)
        if isinstance(exc, ValidationError):
            return Result.fail(ErrorKind.BAD_INPUT, _first_error(exc), elapsed)
        logger.warning("Handler {} failed: {}", name, exc)
        return Result.fail(ErrorKind.HANDLER_FAILURE, str(exc) or type(exc).__name__, elapsed)
