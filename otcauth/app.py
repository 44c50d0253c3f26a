from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from otcauth.api.error_handling import register_exception_handlers
from otcauth.api.routes import router
from otcauth.config import Settings, get_settings
from otcauth.logging import get_logger, set_correlation_id
from otcauth.service.runtime import Runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


def create_app(
    settings: Optional[Settings] = None,
    *,
    runtime_factory: Optional[Callable[[Settings], Runtime]] = None,
) -> FastAPI:
    """Build the FastAPI app; the runtime is created and closed by the lifespan."""

    factory = runtime_factory or Runtime

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        resolved = settings or get_settings()
        runtime = factory(resolved)
        app.state.runtime = runtime
        await runtime.start()
        logger.info("app_started", version=__version__)
        try:
            yield
        finally:
            app.state.runtime = None
            try:
                await runtime.close()
                logger.info("runtime_cleanup_complete")
            except Exception as exc:
                logger.error("shutdown_failed", error=str(exc))

    app = FastAPI(title="OTC Auth Service", version=__version__, lifespan=lifespan)
    app.state.runtime = None

    @app.middleware("http")
    async def add_correlation_id(request, call_next):
        """Honour X-Request-ID from the client or generate one, and echo it back."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    register_exception_handlers(app)
    app.include_router(router)

    @app.get("/healthz")
    async def health(request: Request) -> JSONResponse:
        runtime: Optional[Runtime] = request.app.state.runtime
        if runtime is None:
            return JSONResponse(status_code=503, content={"status": "starting"})

        async def _run_bounded(label: str, func) -> bool:
            try:
                await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
                return True
            except asyncio.TimeoutError:
                logger.error(
                    "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
                )
            except Exception as exc:
                logger.error("health_check_failed", component=label, error=str(exc))
            return False

        store_ok = await _run_bounded("store", runtime.store.verify_connection)
        cache_ok = await _run_bounded("cache", runtime.cache.verify_connection)
        healthy = store_ok and cache_ok
        body: Dict[str, Any] = {
            "status": "healthy" if healthy else "unhealthy",
            "version": __version__,
            "store": {
                "type": type(runtime.store).__name__,
                "status": "healthy" if store_ok else "unhealthy",
            },
            "cache": {
                "type": type(runtime.cache).__name__,
                "status": "healthy" if cache_ok else "unhealthy",
            },
        }
        return JSONResponse(status_code=200 if healthy else 503, content=body)

    return app


app = create_app()
