from __future__ import annotations

from fastapi import APIRouter, Request

from ..dispatcher import get_gateway_server


router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    return get_gateway_server(request).get_health()


@router.get("/status")
async def get_status(request: Request):
    return get_gateway_server(request).get_status()


@router.get("/status/capabilities")
async def get_capabilities(request: Request):
    gateway_server = get_gateway_server(request)
    return {"capabilities": gateway_server.dispatcher.describe()}


@router.get("/status/connections")
async def get_connections(request: Request):
    gateway_server = get_gateway_server(request)
    return {
        "active": gateway_server.registry.get_active_count(),
        "connections": gateway_server.registry.get_connections_info(),
    }
