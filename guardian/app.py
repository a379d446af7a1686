from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from guardian.api.error_handling import register_exception_handlers
from guardian.api.routes import health_router, router
from guardian.config import Settings
from guardian.logging import get_logger, set_correlation_id
from guardian.service.runtime import Runtime, build_runtime

logger = get_logger(__name__)

__version__ = "0.1.0"


def create_app(
    settings: Optional[Settings] = None,
    *,
    runtime: Optional[Runtime] = None,
    start_background: bool = True,
) -> FastAPI:
    """Build the HTTP application.

    A prepared ``runtime`` is used as is, which is how tests inject stores
    and clocks. Otherwise one is built from ``settings`` (or the environment)
    when the app starts.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = False
        if getattr(app.state, "runtime", None) is None:
            app.state.runtime = build_runtime(settings)
            owned = True
        if start_background:
            app.state.runtime.start()
        logger.info("app_started", owned_runtime=owned)
        try:
            yield
        finally:
            if owned or start_background:
                app.state.runtime.close()
            if owned:
                app.state.runtime = None
            logger.info("app_stopped")

    app = FastAPI(title="Guardian Auth", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=[
            "Content-Type",
            "Authorization",
            "X-Client-Id",
            "X-Client-Key",
            "X-Request-ID",
        ],
        expose_headers=["X-Request-ID", "Retry-After"],
        max_age=3600,
    )

    @app.middleware("http")
    async def add_correlation_id(request, call_next):
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @app.middleware("http")
    async def add_security_headers(request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Cache-Control", "no-store")
        return response

    register_exception_handlers(app)
    app.include_router(router)
    app.include_router(health_router)
    return app


app = create_app()
