"""FastAPI application for AbuseGuard."""

import asyncio
import math
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, suppress
from typing import Any

import structlog
from fastapi import Depends, FastAPI, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from abuseguard import __version__
from abuseguard.clock import Clock, SystemClock
from abuseguard.config import Settings, get_settings, validate_settings
from abuseguard.exceptions import PolicyViolation
from abuseguard.limiter import LimiterRegistry
from abuseguard.logging import setup_logging
from abuseguard.middleware import (
    InputScreeningMiddleware,
    RateLimitMiddleware,
    RequestLoggingMiddleware,
    SecurityMonitorMiddleware,
    build_context,
    require_scope,
    violation_response,
)
from abuseguard.models import (
    EvaluateRequest,
    EvaluateResponse,
    RecordEventRequest,
    RequestContext,
    SecurityStats,
    UploadScreenRequest,
)
from abuseguard.monitor import AlertAggregator, SecurityEventBus
from abuseguard.screening import FileScreener, InputScreener

logger = structlog.get_logger()


async def sweep_counters(app: FastAPI, interval: float) -> None:
    """Periodically evict idle window counters and expired alert counters."""
    while True:
        await asyncio.sleep(interval)
        try:
            removed = await asyncio.to_thread(app.state.limiters.sweep)
            expired = await asyncio.to_thread(app.state.security_bus.sweep)
            logger.debug("counters_swept", window_counters=removed, alert_counters=expired)
        except Exception as e:
            logger.error("counter_sweep_failed", error=str(e))


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan manager."""
    # Startup
    setup_logging(app.state.settings)
    settings: Settings = app.state.settings
    logger.info(
        "abuseguard_starting",
        version=__version__,
        scopes=[limiter.name for limiter in app.state.limiters],
    )

    sweeper = asyncio.create_task(sweep_counters(app, settings.cleanup.sweep_interval_seconds))

    yield

    # Shutdown
    sweeper.cancel()
    with suppress(asyncio.CancelledError):
        await sweeper
    logger.info("abuseguard_stopped")


def create_app(settings: Settings | None = None, clock: Clock | None = None) -> FastAPI:
    """
    Build the application and every shared registry it depends on.

    Raises:
        ConfigurationError: when a policy, route mapping or threshold is invalid
    """
    settings = settings or get_settings()
    clock = clock or SystemClock()
    validate_settings(settings)

    aggregator = AlertAggregator(
        settings.monitoring.alert_thresholds,
        settings.monitoring.alert_cooldown_ms / 1000,
        clock,
    )
    bus = SecurityEventBus(aggregator, clock, enabled=settings.monitoring.enabled)
    limiters = LimiterRegistry.from_settings(settings, clock, bus)

    app = FastAPI(
        title="AbuseGuard API",
        version=__version__,
        description="Rate limiting, input screening and security monitoring",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.clock = clock
    app.state.security_bus = bus
    app.state.limiters = limiters
    app.state.screener = InputScreener(settings.screening, settings.validation, bus)
    app.state.file_screener = FileScreener(settings.file_upload, bus)

    # === Middleware (last added runs first) ===

    app.add_middleware(RateLimitMiddleware)
    app.add_middleware(InputScreeningMiddleware)
    app.add_middleware(SecurityMonitorMiddleware)
    app.add_middleware(RequestLoggingMiddleware)

    _register_routes(app)
    _register_error_handlers(app)
    return app


def get_limiters(request: Request) -> LimiterRegistry:
    return request.app.state.limiters


def get_security_bus(request: Request) -> SecurityEventBus:
    return request.app.state.security_bus


def _register_routes(app: FastAPI) -> None:
    # === Health endpoints ===

    @app.get("/health", tags=["Health"])
    async def health(request: Request) -> dict[str, Any]:
        """Health check endpoint."""
        settings: Settings = request.app.state.settings
        return {
            "status": "healthy",
            "version": __version__,
            "checks": {
                "limiters": len(request.app.state.limiters),
                "monitoring": "enabled" if settings.monitoring.enabled else "disabled",
            },
        }

    @app.get("/ready", tags=["Health"])
    async def ready() -> dict[str, str]:
        """Readiness check endpoint."""
        return {"status": "ready"}

    # === Metrics endpoint ===

    @app.get("/metrics", tags=["Observability"])
    async def prometheus_metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        if not request.app.state.settings.metrics_enabled:
            raise HTTPException(status_code=404, detail="Metrics disabled")
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    # === Evaluate endpoint ===

    @app.post("/evaluate", response_model=EvaluateResponse, tags=["Rate Limiting"])
    async def evaluate(
        body: EvaluateRequest, limiters: LimiterRegistry = Depends(get_limiters)
    ) -> JSONResponse:
        """Evaluate a scope for a client identity and count the attempt."""
        if body.scope not in limiters:
            raise HTTPException(status_code=404, detail="Scope not found")
        limiter = limiters.get(body.scope)
        context = RequestContext(ip=body.ip, userId=body.user_id, path=body.path, method=body.method)
        decision = limiter.check(context)

        response = EvaluateResponse(
            allow=decision.admitted,
            scope=decision.scope,
            limit=decision.limit,
            remaining=decision.remaining,
            resetAt=math.ceil(decision.reset_at),
            retryAfter=None if decision.admitted else decision.retry_after,
        )
        return JSONResponse(
            status_code=200 if decision.admitted else 429,
            content=response.model_dump(by_alias=True),
            headers=limiter.headers(decision),
        )

    # === Security events ===

    @app.post("/events", status_code=202, tags=["Monitoring"])
    async def record_event(
        body: RecordEventRequest, bus: SecurityEventBus = Depends(get_security_bus)
    ) -> dict[str, Any]:
        """Record a security event reported by another handler."""
        context = RequestContext(
            ip=body.ip, userAgent=body.user_agent, path=body.path, method=body.method
        )
        outcome = bus.record(body.event_type, body.details, context)
        return {
            "recorded": True,
            "alert": outcome.fired,
            "severity": outcome.severity,
            "escalation": outcome.escalation,
            "suspicious": bus.is_suspicious(body.ip),
        }

    @app.post("/uploads/screen", tags=["Screening"], dependencies=[Depends(require_scope("upload"))])
    async def screen_upload(request: Request, body: UploadScreenRequest) -> dict[str, Any]:
        """Check an upload's size, type and filename before accepting it."""
        file_screener: FileScreener = request.app.state.file_screener
        filename = file_screener.check(
            build_context(request), body.filename, body.content_type, body.size
        )
        return {"success": True, "filename": filename}

    # === Operator endpoints ===

    @app.get("/security/stats", response_model=SecurityStats, tags=["Monitoring"])
    async def security_stats(bus: SecurityEventBus = Depends(get_security_bus)) -> JSONResponse:
        """Suspicious IPs, live alert counters and last alert times."""
        return JSONResponse(content=bus.stats().model_dump(by_alias=True))

    @app.post("/security/suspicious-ips/clear", tags=["Monitoring"])
    async def clear_suspicious_ips(
        bus: SecurityEventBus = Depends(get_security_bus),
    ) -> dict[str, bool]:
        bus.clear_suspicious_ips()
        return {"success": True}

    @app.post("/security/alerts/reset", tags=["Monitoring"])
    async def reset_alert_counts(
        bus: SecurityEventBus = Depends(get_security_bus),
    ) -> dict[str, bool]:
        bus.reset_alert_counts()
        return {"success": True}

    @app.post("/security/limits/reset", tags=["Rate Limiting"])
    async def reset_limits(limiters: LimiterRegistry = Depends(get_limiters)) -> dict[str, bool]:
        limiters.reset()
        return {"success": True}


def _register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(PolicyViolation)
    async def policy_violation_handler(request: Request, exc: PolicyViolation) -> JSONResponse:
        return violation_response(exc)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle unexpected exceptions."""
        logger.exception("unhandled_exception", error=str(exc), path=request.url.path)
        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "error": "INTERNAL_ERROR",
                "message": "Internal server error",
            },
        )


app = create_app()
