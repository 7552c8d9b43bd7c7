"""Pydantic schemas for rate limit rejections."""

from __future__ import annotations

from typing import Any, Dict

from pydantic import BaseModel, ConfigDict, Field


class RateLimitRejection(BaseModel):
    """Body of a 429 response, in the shape existing clients parse."""

    model_config = ConfigDict(populate_by_name=True)

    success: bool = Field(
        default=False, description="Always false for a rejected request."
    )
    error: str = Field(
        ..., description="Rejection message configured on the limiter."
    )
    retry_after: int = Field(
        ...,
        alias="retryAfter",
        description="Seconds to wait before retrying (the full window length).",
    )


# Pass as ``responses=`` on every operation guarded by a rate limiter
RATE_LIMIT_RESPONSES: Dict[int | str, Dict[str, Any]] = {
    429: {
        "model": RateLimitRejection,
        "description": "Too many requests in the current window.",
    },
}
