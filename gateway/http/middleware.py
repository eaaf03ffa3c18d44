from __future__ import annotations

import time
import uuid

from fastapi import FastAPI, Request
from loguru import logger


def register_http_middlewares(app: FastAPI) -> None:
    @app.middleware("http")
    async def request_context_and_logging(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        start = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers["X-Request-ID"] = request_id
            return response
        finally:
            elapsed_ms = (time.perf_counter() - start) * 1000
            logger.info(
                "{} {} -> {} ({:.1f}ms) rid={}",
                request.method,
                request.url.path,
                status_code,
                elapsed_ms,
                request_id,
            )
