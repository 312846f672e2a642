"""
ECOF Delivery - FastAPI Application
===================================
Operational surface of the delivery subsystem.

Endpoints:
    GET /health - Health check
    /v1/delivery/* - Webhook destinations, stats, manual ticks
    /v1/erp-queue/* - ERP queue stats and operator actions
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from core.config import get_settings
from core.errors import ECOFError, NotFoundError, ValidationError
from core.logging import setup_logging
from ecof import __version__
from ecof.api.middleware import CorrelationIdMiddleware
from ecof.api.routes import router
from ecof.delivery.runtime import DeliveryRuntime, create_postgres_runtime

logger = logging.getLogger("ecof.api")


def _error_status(exc: ECOFError) -> int:
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, ValidationError):
        return 400
    return 500


async def ecof_error_handler(request: Request, exc: ECOFError) -> JSONResponse:
    status_code = _error_status(exc)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=status_code, content=exc.to_dict())


def create_app(runtime: DeliveryRuntime | None = None, start_schedulers: bool = False) -> FastAPI:
    """
    Create FastAPI application.

    Args:
        runtime: Prebuilt runtime (tests pass an in-memory one); when None the
            Postgres runtime is created on startup and closed on shutdown
        start_schedulers: Also run the delivery loops inside the API process
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("ECOF delivery API starting...")
        owned = app.state.runtime is None
        if owned:
            settings = get_settings()
            for warning in settings.validate_soft():
                logger.warning(warning)
            app.state.runtime = await create_postgres_runtime(settings)
        if start_schedulers:
            app.state.runtime.start()

        yield

        logger.info("ECOF delivery API shutting down...")
        if owned or start_schedulers:
            await app.state.runtime.stop()

    app = FastAPI(
        title="ECOF Delivery API",
        description="Operational surface for webhook and ERP delivery",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.runtime = runtime

    app.add_middleware(CorrelationIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(ECOFError, ecof_error_handler)

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        runtime: DeliveryRuntime | None = app.state.runtime
        if runtime is None:
            return JSONResponse(status_code=503, content={"status": "starting"})

        services = {}
        overall_status = "healthy"
        for name, scheduler in runtime.schedulers.items():
            services[name] = {"running": scheduler.is_running, "last_tick_at": scheduler.last_tick_at}
        try:
            for category in runtime.categories:
                await runtime.event_log.last_sequence(category)
            services["store"] = {"status": "healthy"}
        except Exception as e:
            services["store"] = {"status": "unhealthy", "error": str(e)}
            overall_status = "degraded"

        return {"status": overall_status, "version": __version__, "services": services}

    app.include_router(router)
    return app


def main():
    import uvicorn

    settings = get_settings()
    setup_logging()
    uvicorn.run(create_app(), host=settings.API_HOST, port=settings.API_PORT, log_config=None)
