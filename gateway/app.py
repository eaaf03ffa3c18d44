from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger

from gateway.agent import Agent
from gateway.config import GatewayConfig, get_config
from gateway.connection import WebSocketChannel
from gateway.http.dispatcher import client_key_for
from gateway.http.middleware import register_http_middlewares
from gateway.http.router import router as gateway_router
from gateway.normalizer import HTTP_STATUS_BY_KIND
from gateway.protocol import ErrorKind, Result
from gateway.server import GatewayServer

_KIND_BY_STATUS = {status: kind for kind, status in HTTP_STATUS_BY_KIND.items()}


def _websocket_token(websocket: WebSocket) -> Optional[str]:
    auth = websocket.headers.get("authorization", "")
    if auth.startswith("Bearer "):
        return auth[7:].strip() or None
    return websocket.query_params.get("token") or None


def create_app(
    config: Optional[GatewayConfig] = None,
    agent: Optional[Agent] = None,
    gateway_server: Optional[GatewayServer] = None,
) -> FastAPI:
    """Build the FastAPI application hosting one gateway server."""
    cfg = config or (gateway_server.config if gateway_server else get_config())
    server = gateway_server or GatewayServer(cfg)
    if agent is not None:
        server.attach_agent(agent)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await server.start()
        try:
            yield
        finally:
            logger.info("Shutting down gateway...")
            await server.stop()

    app = FastAPI(
        title="Agent Gateway",
        description="HTTP and WebSocket command gateway for a hosted agent",
        version=cfg.server.version,
        lifespan=lifespan,
    )
    app.state.gateway_server = server

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        kind = _KIND_BY_STATUS.get(exc.status_code, ErrorKind.INTERNAL)
        result = Result.fail(kind, str(exc.detail))
        return JSONResponse(status_code=exc.status_code, content=result.to_wire())

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.opt(exception=exc).error("Unhandled request error: {}", exc)
        result = Result.fail(ErrorKind.INTERNAL, str(exc) or "Internal server error")
        return JSONResponse(status_code=500, content=result.to_wire())

    origins = sorted(cfg.cors.allowed_origins)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials="*" not in origins,
        allow_methods=cfg.cors.methods,
        allow_headers=cfg.cors.headers,
    )
    register_http_middlewares(app)
    app.include_router(gateway_router)

    if cfg.websocket.enabled:

        @app.websocket(cfg.websocket.path)
        async def gateway_websocket_endpoint(websocket: WebSocket):
            token = _websocket_token(websocket)
            admission = server.admit_channel(token, websocket.headers.get("origin"))
            if not admission.allowed:
                logger.info("WebSocket handshake rejected: {}", admission.error.message)
                await websocket.close(code=1008, reason=admission.error.message)
                return

            await websocket.accept()
            host = websocket.client.host if websocket.client else "unknown"

            async def receive_frame():
                # Binary frames are handed to the normalizer as bytes, not rejected here
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    raise WebSocketDisconnect(message.get("code", 1000))
                if message.get("text") is not None:
                    return message["text"]
                return message.get("bytes") or b""

            await server.run_channel(
                WebSocketChannel(websocket),
                receive_frame,
                client_key=client_key_for(websocket, token),
                metadata={"remote": host},
            )

    return app
