from __future__ import annotations

from contextlib import asynccontextmanager

import httpx
import sentry_sdk
import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from sentry_sdk.integrations.fastapi import FastApiIntegration
from starlette.exceptions import HTTPException as StarletteHTTPException

from .api.routes import places as places_routes
from .completion_client import CompletionClient
from .health import HealthChecker
from .logging_config import SERVICE_VERSION, configure_structlog, get_logger
from .metrics import PrometheusMiddleware, get_metrics
from .normalizer import QueryNormalizer
from .places import PlacesClient, PlaceSearchService
from .schemas import HealthResponse
from .settings import Settings, settings
from .utils import (
    add_cors,
    add_rate_limiting,
    add_request_id_tracing,
    add_security_headers,
)

logger = get_logger(__name__)


def create_app(
    app_settings: Settings | None = None,
    *,
    completion_transport: httpx.AsyncBaseTransport | None = None,
    places_transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    """
    Build the application from an explicit Settings value.

    The transports are only passed by tests to stub the two upstream services.
    """
    cfg = app_settings or settings
    configure_structlog(cfg)

    if cfg.SENTRY_DSN:
        sentry_sdk.init(
            dsn=cfg.SENTRY_DSN,
            environment=cfg.SENTRY_ENVIRONMENT,
            release=cfg.SENTRY_RELEASE or f"places-gateway@{SERVICE_VERSION}",
            integrations=[FastApiIntegration()],
            traces_sample_rate=cfg.SENTRY_TRACES_SAMPLE_RATE,
        )

    completion_client = CompletionClient(cfg, transport=completion_transport)
    places_client = PlacesClient(cfg, transport=places_transport)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "startup",
            llm_configured=cfg.llm_configured,
            places_configured=cfg.places_configured,
        )
        if not cfg.llm_configured:
            logger.info("llm_disabled_using_naive_parse")
        yield
        await completion_client.aclose()
        await places_client.aclose()
        logger.info("shutdown")

    app = FastAPI(
        title="Places Gateway API",
        version=SERVICE_VERSION,
        description="Free-text place search backed by an LLM query parser and Google Places",
        lifespan=lifespan,
    )
    app.state.settings = cfg
    app.state.health_checker = HealthChecker(cfg)
    app.state.place_search = PlaceSearchService(
        cfg, QueryNormalizer(cfg, completion_client), places_client
    )

    add_cors(app, cfg)
    add_security_headers(app)
    add_request_id_tracing(app)
    add_rate_limiting(app, cfg)
    app.add_middleware(PrometheusMiddleware)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            content = {"error": "Not found"}
        else:
            content = {"error": str(exc.detail)}
        return JSONResponse(status_code=exc.status_code, content=content, headers=exc.headers)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.error(
            "unhandled_exception",
            error_type=type(exc).__name__,
            path=request.url.path,
            method=request.method,
            exc_info=exc,
        )
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    app.include_router(places_routes.router)

    @app.get("/api/health", response_model=HealthResponse, tags=["health"])
    async def health(request: Request) -> HealthResponse:
        """Service status with an ISO-8601 timestamp."""
        return request.app.state.health_checker.check_all()

    @app.get("/metrics", include_in_schema=False)
    def metrics():
        """Expose Prometheus metrics."""
        try:
            return get_metrics()
        except Exception:  # pragma: no cover - registry collection failure
            logger.exception("metrics_export_failed")
            raise HTTPException(status_code=503, detail="metrics unavailable")

    # Mounted last so API routes win; serves index.html at "/"
    if cfg.STATIC_DIR.is_dir():
        app.mount("/", StaticFiles(directory=str(cfg.STATIC_DIR), html=True), name="static")
    else:
        logger.warning("static_dir_missing", static_dir=str(cfg.STATIC_DIR))

    return app


app = create_app()


def serve() -> None:
    """Run the gateway with uvicorn on HOST:PORT."""
    logger.info("server_starting", url=f"http://localhost:{settings.PORT}")
    uvicorn.run(app, host=settings.HOST, port=settings.PORT, log_config=None)


if __name__ == "__main__":
    serve()
