"""Request audit logging for web mode.

One line per authenticated request: user, method, path, status and latency.
Output goes to stdout (collected by the container log driver). Durable
audit entries for style mutations are written separately by style.audit.
"""

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

logger = logging.getLogger("audit")
logger.setLevel(logging.INFO)

if not logger.handlers:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
    logger.addHandler(handler)

_SKIP_PATHS = {"/health"}


class AuditMiddleware(BaseHTTPMiddleware):
    """Log every request except health checks."""

    async def dispatch(self, request: Request, call_next):
        if request.url.path in _SKIP_PATHS:
            return await call_next(request)

        started = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - started) * 1000

        logger.info(
            "user=%s method=%s path=%s status=%d duration_ms=%.1f",
            getattr(request.state, "user_id", None) or "anonymous",
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
        )
        return response
