from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from accessflow.api.error_handling import register_exception_handlers
from accessflow.api.routes import router
from accessflow.config import get_settings
from accessflow.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    from accessflow.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("app_started", email_configured=runtime.email.is_configured)
    yield
    logger.info("app_stopped")


app = FastAPI(title="AccessFlow", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    settings = get_settings()
    if settings.cors_allow_origins:
        return settings.cors_allow_origins
    # Default to the configured frontend; avoid wildcard when credentials are enabled.
    return [settings.frontend_url]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Bind a correlation ID to the request for log tracing.

    Taken from the X-Request-ID header when the client sends one, otherwise
    generated, and echoed back in the X-Request-ID response header.
    """
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/v1/"):
        response.headers.setdefault("Cache-Control", "no-store")
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    from accessflow.service.runtime import get_runtime

    runtime = get_runtime()
    return {
        "status": "healthy",
        "checks": {
            "store": {"status": "healthy", "type": "memory", "persist": runtime.store.persist},
            "email": {"status": "configured" if runtime.email.is_configured else "dev_mode"},
        },
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def create_app() -> FastAPI:
    return app
