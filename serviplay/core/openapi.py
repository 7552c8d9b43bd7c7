"""OpenAPI customization.

The 429 rejection body is declared per operation through
``serviplay.schemas.rate_limit.RATE_LIMIT_RESPONSES``, so FastAPI generates
the ``RateLimitRejection`` schema itself. This module only adds tag metadata.
"""

from __future__ import annotations

from typing import Any, Dict, List

from fastapi import FastAPI

_TAGS: List[Dict[str, str]] = [
    {"name": "Health", "description": "Liveness and smoke-test endpoints."},
]


def apply_openapi_customizations(app: FastAPI) -> None:
    """Patch FastAPI's OpenAPI generation with tag descriptions."""

    original_openapi = app.openapi

    def custom_openapi() -> Dict[str, Any]:
        if app.openapi_schema:
            return app.openapi_schema

        schema = original_openapi()

        tags = schema.setdefault("tags", [])
        known = {t.get("name") for t in tags}
        tags.extend(t for t in _TAGS if t["name"] not in known)

        app.openapi_schema = schema
        return schema

    app.openapi = custom_openapi  # type: ignore[assignment]
