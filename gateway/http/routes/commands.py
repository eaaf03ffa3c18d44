"""Command endpoints. Every route here runs the policy layer before dispatch."""
from __future__ import annotations

from fastapi import APIRouter, Request

from gateway.capabilities import CHAT, MEMORY_RETRIEVE, MEMORY_STORE

from ..dispatcher import dispatch_http


router = APIRouter()


@router.post("/command")
async def post_command(request: Request):
    """Generic envelope: ``{"name": ..., "parameters": {...}}``."""
    return await dispatch_http(request, await request.body())


@router.post("/chat")
async def post_chat(request: Request):
    return await dispatch_http(request, await request.body(), name=CHAT)


@router.get("/memory")
async def get_memory(request: Request):
    return await dispatch_http(request, dict(request.query_params), name=MEMORY_RETRIEVE)


@router.post("/memory")
async def post_memory(request: Request):
    return await dispatch_http(request, await request.body(), name=MEMORY_STORE)


@router.post("/action")
async def post_action(request: Request):
    """Run an extension action: ``{"action": ..., "parameters": {...}}``."""
    return await dispatch_http(request, await request.body(), name_field="action")
