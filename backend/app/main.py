"""
FastAPI application for the gate.

Run with: python run.py serve
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import RedirectResponse
from loguru import logger

from trafficgate.errors import GateError

from .api.gate import NO_CACHE_HEADERS, router as gate_router


def create_app(service=None, watch_config: bool = True) -> FastAPI:
    """
    Build the app around a GateService.

    Args:
        service: GateService to use (defaults to the module singleton)
        watch_config: Start the env file watcher during the app lifespan
    """
    if service is None:
        from .services.gate_service import gate_service as service

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if watch_config:
            await service.start()
        try:
            yield
        finally:
            if watch_config:
                await service.stop()
            await service.close()

    app = FastAPI(
        title="trafficgate",
        description="Visitor classification and routing",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.gate_service = service
    app.include_router(gate_router)

    @app.exception_handler(GateError)
    async def gate_error_handler(request: Request, exc: GateError):
        routes = service.evaluator.config.routes
        fallback = routes.block_url or routes.fallback_url or "/"
        logger.error(f"Gate error on {request.url.path}: {exc}")
        return RedirectResponse(fallback, status_code=302, headers=NO_CACHE_HEADERS)

    return app

