import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from api.admin import router as admin_router
from api.auth import AuthMiddleware, REQUIRE_AUTH
from api.middleware import add_cors_middleware
from api.routes import router
from phi.scrubber import redact_phi
from server import find_free_port, start_server
from storage import get_db

_logger = logging.getLogger(__name__)

_USE_PG = bool(os.getenv("DATABASE_URL", ""))
_SENTRY_DSN = os.getenv("SENTRY_DSN", "")
_LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()


def scrub_sentry_event(event: dict, hint: dict) -> dict:
    """Redact PHI from exception values and breadcrumbs before they leave the process."""
    for exc_info in event.get("exception", {}).get("values", []):
        if exc_info.get("value"):
            exc_info["value"] = redact_phi(exc_info["value"])
    for bc in event.get("breadcrumbs", {}).get("values", []):
        if bc.get("message"):
            bc["message"] = redact_phi(bc["message"])
    return event


def _init_sentry() -> None:
    if not _SENTRY_DSN:
        return
    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.starlette import StarletteIntegration

    sentry_sdk.init(
        dsn=_SENTRY_DSN,
        environment=os.getenv("SENTRY_ENVIRONMENT", "development"),
        integrations=[FastApiIntegration(), StarletteIntegration()],
        before_send=scrub_sentry_event,
        send_default_pii=False,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle startup and shutdown events."""
    if _USE_PG:
        from storage.pg_database import _get_pool, run_migrations
        await _get_pool()
        await run_migrations()
    else:
        # Desktop mode: create the SQLite schema up front
        get_db()

    yield

    if _USE_PG:
        from storage.pg_database import close_pool
        await close_pool()


def create_app() -> FastAPI:
    logging.basicConfig(
        level=_LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    _init_sentry()
    app = FastAPI(title="Letter Style Sidecar", version="1.0.0", lifespan=lifespan)
    # Middleware order (inner → outer): Auth → Audit → CORS
    app.add_middleware(AuthMiddleware)
    if REQUIRE_AUTH:
        from api.audit import AuditMiddleware
        from api.rate_limit import limiter, rate_limit_exceeded_handler
        from slowapi.errors import RateLimitExceeded

        app.add_middleware(AuditMiddleware)
        app.state.limiter = limiter
        app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
    add_cors_middleware(app)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        _logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error."},
        )

    app.include_router(router)
    app.include_router(admin_router)
    return app


if __name__ == "__main__":
    port = find_free_port()
    app = create_app()
    start_server(app, port)
