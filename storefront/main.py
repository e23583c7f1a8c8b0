"""
Storefront API - Main FastAPI Application

Wires the routers, error envelope, latency middleware and the per-app state
(settings, cache, payment gateway, metrics collectors).
All endpoints return the standard envelope:
    {"success": true, "data": ..., "message"?: ..., "pagination"?: ...}
    {"success": false, "error": CODE, "message": ..., "details"?: ...}
"""

import time
import traceback
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import Depends, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request as StarletteRequest
from starlette.responses import Response as StarletteResponse

from storefront import __version__
from storefront.api import ROUTERS
from storefront.cache import CacheClient
from storefront.config import Settings, get_settings
from storefront.database import Base, engine, get_db
from storefront.dependencies import get_cache, get_metrics_collector
from storefront.errors import StorefrontError
from storefront.logger import configure_logging, get_logger
from storefront.metrics import MetricsCollector, PerformanceBuffer
from storefront.payments.gateway import StripeGateway

logger = get_logger("main")

HTTP_ERROR_CODES = {
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables on startup (no migration tooling)."""
    try:
        Base.metadata.create_all(bind=engine)
    except Exception as e:
        logger.warning("Could not run Base.metadata.create_all: %s", e)
    yield


class LatencyLoggingMiddleware(BaseHTTPMiddleware):
    """Logs method, path, status and duration; feeds the request metrics collector."""

    async def dispatch(self, request: StarletteRequest, call_next) -> StarletteResponse:
        if request.method == "OPTIONS":
            return await call_next(request)
        t0 = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - t0) * 1000

        route = request.scope.get("route")
        endpoint = f"{request.method} {getattr(route, 'path', request.url.path)}"
        collector: MetricsCollector = request.app.state.metrics
        collector.record_request(endpoint, duration_ms, is_error=response.status_code >= 500)

        logger.info(
            "[LATENCY] %s %s -> %d  %.1fms",
            request.method, request.url.path, response.status_code, duration_ms,
        )
        return response


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(StorefrontError)
    async def storefront_error_handler(request: Request, exc: StorefrontError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.code, exc.message)
        else:
            logger.info("%s %s rejected: %s", request.method, request.url.path, exc.code)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={
                "success": False,
                "error": "VALIDATION_ERROR",
                "message": "Invalid request data",
                # Raw input is left out; it may not be JSON-encodable (inf, nan)
                "details": jsonable_encoder(
                    [{key: error[key] for key in ("loc", "msg", "type") if key in error} for error in exc.errors()]
                ),
            },
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "success": False,
                "error": HTTP_ERROR_CODES.get(exc.status_code, "HTTP_ERROR"),
                "message": str(exc.detail),
            },
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Log unhandled exceptions and return 500 with the error envelope."""
        logger.error("Unhandled exception: %s\n%s", exc, traceback.format_exc())
        settings: Settings = request.app.state.settings
        message = str(exc) if settings.is_development else "Internal server error"
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": "INTERNAL_ERROR", "message": message},
        )


def create_app(
    settings: Optional[Settings] = None,
    gateway: Optional[StripeGateway] = None,
    cache: Optional[CacheClient] = None,
) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    app = FastAPI(
        title="Storefront API",
        description="Catalog, cart, orders, inventory reservation and Stripe payments",
        version=__version__,
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.cache = cache or CacheClient(settings.redis_url or None, product_ttl=settings.product_cache_ttl_seconds)
    app.state.gateway = gateway or StripeGateway(
        settings.stripe_secret_key,
        settings.stripe_webhook_secret,
        settings.webhook_tolerance_seconds,
    )
    app.state.performance_buffer = PerformanceBuffer(settings.performance_buffer_size)
    app.state.metrics = MetricsCollector(settings.metrics_window_size)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(LatencyLoggingMiddleware)

    register_exception_handlers(app)
    for router in ROUTERS:
        app.include_router(router)

    @app.get("/health")
    def health_check(db: Session = Depends(get_db), cache: CacheClient = Depends(get_cache)):
        """Database and cache connectivity."""
        health_status = {"service": "healthy", "database": "unknown", "cache": "disabled"}
        try:
            db.execute(text("SELECT 1"))
            health_status["database"] = "healthy"
        except Exception as e:
            health_status["database"] = f"unhealthy: {e}"
            health_status["service"] = "degraded"

        if cache.enabled:
            if cache.ping():
                health_status["cache"] = "healthy"
            else:
                health_status["cache"] = "unhealthy: no response"
                health_status["service"] = "degraded"
        return health_status

    @app.get("/metrics")
    def get_metrics(collector: MetricsCollector = Depends(get_metrics_collector)):
        """Request latency percentiles, counts and error rates per endpoint."""
        return collector.get_summary()

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run("storefront.main:app", host="0.0.0.0", port=8001, reload=False)
