"""
FastAPI application for the CRM sidecar.
"""

import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from sidecar.config import settings
from sidecar.infrastructure.observability.logging import get_logger, log_request, setup_logging
from sidecar.middleware.request_context import RequestContextMiddleware
from sidecar.routes import auth, crm, health
from sidecar.routes.errors import register_error_handlers
from sidecar.services.container import ServiceContainer, build_container

# Setup logging before creating the app
setup_logging(log_level=settings.LOG_LEVEL)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the service container on startup unless one was injected, close it on shutdown."""
    logger.info("Application starting", environment=settings.environment, debug=settings.debug)

    owned = False
    if getattr(app.state, "container", None) is None:
        try:
            app.state.container = build_container(settings)
            owned = True
        except Exception as e:
            logger.error("Failed to initialize services", error=str(e), error_type=type(e).__name__)
            raise

    yield

    logger.info("Application shutting down")
    if owned:
        try:
            await app.state.container.close()
        except Exception as e:
            logger.error("Error closing services", error=str(e))


def create_app(container: ServiceContainer | None = None) -> FastAPI:
    app = FastAPI(
        title="CRM Sidecar",
        description="Multi-tenant CRM sidecar for email client plugins",
        version=health.SERVICE_VERSION,
        lifespan=lifespan,
    )
    app.state.container = container

    register_error_handlers(app)

    app.include_router(health.router)
    app.include_router(auth.router)
    app.include_router(crm.router)

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log HTTP requests with timing."""
        start_time = time.time()
        response = await call_next(request)
        process_time = (time.time() - start_time) * 1000
        log_request(request.method, request.url.path, response.status_code, round(process_time, 2))
        return response

    # Added last so it wraps everything, including request logging.
    app.add_middleware(RequestContextMiddleware, max_request_bytes=settings.MAX_REQUEST_BYTES)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
