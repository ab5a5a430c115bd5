"""Rate limiting for web mode using slowapi.

Analysis endpoints each trigger an LLM call, so they are limited per
clinician. The limiter is disabled in desktop mode.
"""

import os

from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.requests import Request
from starlette.responses import JSONResponse

REQUIRE_AUTH = os.getenv("REQUIRE_AUTH", "").lower() == "true"

STYLE_ANALYSIS_RATE_LIMIT = os.getenv("STYLE_ANALYSIS_RATE_LIMIT", "10/minute")


def _get_user_key(request: Request) -> str:
    """Authenticated user_id, or the client address when there is none."""
    return getattr(request.state, "user_id", None) or get_remote_address(request)


limiter = Limiter(key_func=_get_user_key, enabled=REQUIRE_AUTH)


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    return JSONResponse(
        status_code=429,
        content={
            "detail": "Too many style analysis requests. Please wait before retrying.",
            "retry_after": exc.detail,
        },
    )
