from __future__ import annotations

import time
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request

from serviplay.core.config import API_VERSION, settings
from serviplay.core.rate_limit import create_rate_limiter, enforce_rate_limit
from serviplay.schemas.rate_limit import RATE_LIMIT_RESPONSES

router = APIRouter(tags=["Health"])

_started_at = time.monotonic()

test_limiter = create_rate_limiter(
    window_ms=60 * 1000,
    max_requests=30,
    message="Too many test requests, please try again in a minute",
)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.get("/health")
def health_check(request: Request) -> dict:
    """Health check endpoint.

    Never rate limited. Reports which counter store currently governs
    requests so a degraded (fallback-only) instance is visible to monitoring.
    """

    return {
        "status": "OK",
        "timestamp": _now_iso(),
        "uptime": round(time.monotonic() - _started_at, 3),
        "environment": settings.app_env,
        "cache": request.app.state.cache.status(),
    }


@router.get(
    "/test",
    dependencies=[Depends(enforce_rate_limit), Depends(test_limiter)],
    responses=RATE_LIMIT_RESPONSES,
)
def api_test() -> dict:
    return {
        "message": "Serviplay API is working!",
        "version": API_VERSION,
        "timestamp": _now_iso(),
    }
