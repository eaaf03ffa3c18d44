from __future__ import annotations

import hashlib
from typing import Any, Optional

from fastapi import HTTPException, Request
from fastapi.requests import HTTPConnection
from fastapi.responses import JSONResponse

from gateway.server import GatewayServer


def get_gateway_server(request: Request) -> GatewayServer:
    gateway_server = getattr(request.app.state, "gateway_server", None)
    if gateway_server is None:
        raise HTTPException(status_code=503, detail="Gateway server not initialized")
    return gateway_server


def bearer_token(request: Request) -> Optional[str]:
    auth = request.headers.get("Authorization", "")
    if auth.startswith("Bearer "):
        return auth[7:].strip() or None
    return None


def client_key_for(request: HTTPConnection, token: Optional[str]) -> str:
    # Digest only; the raw token must never reach connection metadata or logs
    if token:
        digest = hashlib.sha256(token.encode("utf-8")).hexdigest()[:16]
        return f"token:{digest}"
    host = request.client.host if request.client else "unknown"
    return f"ip:{host}"


async def dispatch_http(
    request: Request,
    raw_body: Any,
    name: Optional[str] = None,
    name_field: str = "name",
) -> JSONResponse:
    """Run one HTTP call through the gateway and render the normalized reply."""
    gateway_server = get_gateway_server(request)
    token = bearer_token(request)
    reply = await gateway_server.handle_http_request(
        raw_body,
        client_key=client_key_for(request, token),
        auth_token=token,
        origin=request.headers.get("Origin"),
        name=name,
        name_field=name_field,
    )
    return JSONResponse(status_code=reply.status_code, content=reply.body)
