"""FastAPI application factory."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response

from kfbridge.observability.correlation import (
    CORRELATION_ID_HEADER,
    correlation_scope,
    resolve_correlation_id,
)
from kfbridge.observability.logging import get_logger
from kfbridge.services.bridge import BridgeService

from .routers import public
from .routes import webhooks_kf

logger = get_logger(__name__)


def create_app(service: BridgeService | None = None) -> FastAPI:
    """Create the FastAPI app bound to one BridgeService.

    Args:
        service: Explicit service (tests). If None, built from the environment.

    Returns:
        Configured FastAPI application. Shutdown drains the worker and
        flushes cursors.
    """
    if service is None:
        service = BridgeService.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        logger.info("shutting down, draining background jobs")
        app.state.service.close()

    app = FastAPI(
        title="kfbridge",
        docs_url=None,
        redoc_url=None,
        lifespan=lifespan,
    )
    app.state.service = service

    # Correlation ID middleware
    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next) -> Response:
        cid = resolve_correlation_id(request.headers.get(CORRELATION_ID_HEADER))
        with correlation_scope(cid):
            response = await call_next(request)
        response.headers[CORRELATION_ID_HEADER] = cid
        return response

    app.include_router(public.router)
    # Catch-all webhook paths must be mounted last
    app.include_router(webhooks_kf.router)

    return app
