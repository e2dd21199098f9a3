"""
Request ID middleware for request correlation.

- Generates or accepts X-Request-ID header
- Stores in request.state and response headers
- Sets context var so request_id is available in logs throughout the request
- Slow requests are logged with the active rule epoch and loaded principal count
"""

import time
import uuid
from typing import Any, Callable, Dict

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from stagegate.logging_config import get_logger, request_id_var

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
SLOW_REQUEST_MS = 1000


def _engine_fields(request: Request) -> Dict[str, Any]:
    context = getattr(request.app.state, "context", None)
    if context is None:
        return {"engine_ready": False}
    return {
        "engine_ready": True,
        "rule_epoch": context.registry.epoch,
        "loaded_principals": len(context.store.principals()),
    }


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Tag every request with an id and report slow ones against engine state."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request.state.request_id = request_id
        token = request_id_var.set(request_id)

        try:
            start = time.perf_counter()
            response = await call_next(request)
            duration_ms = (time.perf_counter() - start) * 1000
            response.headers[REQUEST_ID_HEADER] = request_id

            if duration_ms > SLOW_REQUEST_MS:
                logger.warning(
                    "Slow request",
                    extra={
                        "path": request.url.path,
                        "method": request.method,
                        "duration_ms": round(duration_ms, 1),
                        **_engine_fields(request),
                    },
                )
            return response
        finally:
            request_id_var.reset(token)
