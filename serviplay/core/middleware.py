"""HTTP middleware for request correlation and access logging.

Accepts an incoming correlation header (LOG_REQUEST_ID_HEADER, default
X-Request-ID) or generates a UUID, exposes it to logging through contextvars
for the duration of the request, echoes it back with the request duration,
and writes one ``http.request`` log line per request. Throttled requests
(429) are logged at warning level.

Usage:
    app.middleware("http")(request_id_middleware)
"""

from __future__ import annotations

import logging
import time
import uuid

from fastapi import Request, Response, status

from serviplay.core.config import settings
from serviplay.core.logging import clear_request_id, set_request_id

logger = logging.getLogger(__name__)


async def request_id_middleware(request: Request, call_next) -> Response:
    header_name = settings.log.request_id_header
    request_id = request.headers.get(header_name) or str(uuid.uuid4())
    set_request_id(request_id)
    start = time.perf_counter()
    try:
        response: Response = await call_next(request)
        duration_ms = (time.perf_counter() - start) * 1000
        level = (
            logging.WARNING
            if response.status_code == status.HTTP_429_TOO_MANY_REQUESTS
            else logging.INFO
        )
        logger.log(
            level,
            "http.request",
            extra={
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "duration_ms": round(duration_ms, 2),
            },
        )
    finally:
        clear_request_id()

    response.headers[header_name] = request_id
    response.headers.setdefault("X-Request-Duration-ms", f"{duration_ms:.2f}")
    return response
