"""
Global middleware — request ids, timing and cache headers.
"""

from __future__ import annotations

import logging
import time
import uuid

from fastapi import FastAPI, Request

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-Id"

# responses under these prefixes may carry credentials or popup pages bound to one flow
NO_STORE_PREFIXES = ("/oauth", "/vault")


def register_middleware(app: FastAPI) -> None:
    """Attach the app-level HTTP middleware."""

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        request.state.request_id = request_id
        start = time.perf_counter()

        response = await call_next(request)

        elapsed = time.perf_counter() - start
        response.headers[REQUEST_ID_HEADER] = request_id
        response.headers["X-Process-Time"] = f"{elapsed:.4f}"
        if request.url.path.startswith(NO_STORE_PREFIXES):
            response.headers["Cache-Control"] = "no-store"
            response.headers["Pragma"] = "no-cache"
        logger.debug(
            "%s %s -> %d in %.3fs [%s]",
            request.method, request.url.path, response.status_code, elapsed, request_id,
        )
        return response
