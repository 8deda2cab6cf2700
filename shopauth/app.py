from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request

from shopauth.api.error_handling import register_exception_handlers
from shopauth.api.routes import router
from shopauth.api.schemas import Envelope
from shopauth.logging import get_logger, set_correlation_id
from shopauth.service.runtime import Runtime

logger = get_logger(__name__)

__version__ = "0.1.0"


def create_app(runtime: Optional[Runtime] = None) -> FastAPI:
    """Build the application.

    The lifespan owns the runtime: it opens the store and cache on startup
    and closes them on shutdown. Pass ``runtime`` to reuse a prepared one
    (tests inject clocks and stores this way).
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        active = runtime or Runtime()
        app.state.runtime = active
        await active.open()
        try:
            yield
        finally:
            try:
                await active.close()
                logger.info("runtime_cleanup_complete")
            except Exception as exc:
                logger.error("shutdown_failed", error=str(exc))

    app = FastAPI(title="Shop Auth", version=__version__, lifespan=lifespan)
    if runtime is not None:
        app.state.runtime = runtime

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        """Tag each request with X-Request-ID for log correlation."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        # Token-bearing responses must never be cached by proxies
        if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
            response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
        if request.url.scheme == "https":
            response.headers.setdefault(
                "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
            )
        return response

    @app.get("/healthz", response_model=Envelope, tags=["health"])
    async def healthz():
        return Envelope(status="ok", data={"status": "healthy", "version": __version__})

    register_exception_handlers(app)
    app.include_router(router)
    return app


app = create_app()
