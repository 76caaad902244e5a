"""Middleware for the processor API server.

Provides request logging and a last-resort handler that turns uncaught
exceptions into a JSON 500.
"""

from __future__ import annotations

import time
from typing import Any

from aiohttp import web

from discubot.logging import get_logger

log = get_logger("discubot.api.middleware")


def create_error_middleware() -> Any:
    """Create middleware converting unhandled exceptions into ``500`` JSON."""

    @web.middleware
    async def error_middleware(request: web.Request, handler: Any) -> web.StreamResponse:
        try:
            return await handler(request)  # type: ignore[no-any-return]
        except web.HTTPException:
            raise
        except Exception as e:
            log.exception(
                "unhandled_request_error",
                method=request.method,
                path=request.path,
                error=str(e),
            )
            return web.json_response({"error": "Internal server error"}, status=500)

    return error_middleware


def create_request_logging_middleware() -> Any:
    """Create middleware logging method, path, status and duration per request."""

    @web.middleware
    async def request_logging_middleware(
        request: web.Request, handler: Any
    ) -> web.StreamResponse:
        started = time.perf_counter()
        status = 500
        try:
            response = await handler(request)
            status = response.status
            return response  # type: ignore[no-any-return]
        except web.HTTPException as e:
            status = e.status
            raise
        finally:
            log.info(
                "api_request",
                method=request.method,
                path=request.path,
                status=status,
                duration_ms=round((time.perf_counter() - started) * 1000, 2),
            )

    return request_logging_middleware
