"""HTTP middleware wiring the abuse-prevention core in front of route handlers.

Order, outermost first: request logging, security monitor, input screening,
rate limiting. The shared components are read from ``request.app.state`` so
that every app instance carries its own registries.
"""

from __future__ import annotations

import json
import time
from collections.abc import Awaitable, Callable
from typing import Any
from urllib.parse import parse_qsl, quote, urlencode

import structlog
from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from abuseguard.exceptions import InvalidInput, PolicyViolation
from abuseguard.limiter import LimiterRegistry
from abuseguard.metrics import metrics
from abuseguard.models import Decision, RequestContext
from abuseguard.monitor import SecurityEventBus
from abuseguard.screening import InputScreener

logger = structlog.get_logger()

CallNext = Callable[[Request], Awaitable[Response]]


def client_ip(request: Request) -> str:
    """Client address, honouring X-Forwarded-For only when configured to."""
    settings = request.app.state.settings
    if settings.trust_forwarded_for:
        forwarded_for = request.headers.get("x-forwarded-for")
        if forwarded_for:
            return forwarded_for.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def build_context(request: Request) -> RequestContext:
    """Describe a request for the limiter, screener and event bus."""
    return RequestContext(
        ip=client_ip(request),
        userAgent=request.headers.get("user-agent"),
        path=request.url.path,
        method=request.method,
        userId=getattr(request.state, "user_id", None),
        params={k: str(v) for k, v in request.path_params.items()},
    )


def violation_response(exc: PolicyViolation) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_body(),
        headers=exc.headers,
    )


def _is_exempt(request: Request) -> bool:
    path = request.url.path
    return any(path == exempt for exempt in request.app.state.settings.exempt_paths)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs every request and records HTTP metrics."""

    async def dispatch(self, request: Request, call_next: CallNext) -> Response:
        start_time = time.perf_counter()
        ip = client_ip(request)
        logger.info("request_started", method=request.method, path=request.url.path, ip=ip)

        response = await call_next(request)

        duration = time.perf_counter() - start_time
        endpoint = request.url.path
        metrics.http_requests_total.labels(
            method=request.method,
            endpoint=endpoint,
            status=response.status_code,
        ).inc()
        metrics.http_request_duration.labels(method=request.method, endpoint=endpoint).observe(
            duration
        )
        logger.info(
            "request_completed",
            method=request.method,
            path=endpoint,
            status=response.status_code,
            duration_ms=round(duration * 1000, 3),
            ip=ip,
        )
        return response


class SecurityMonitorMiddleware(BaseHTTPMiddleware):
    """Flags requests from suspicious sources. Advisory only: never blocks."""

    async def dispatch(self, request: Request, call_next: CallNext) -> Response:
        bus: SecurityEventBus = request.app.state.security_bus
        ip = client_ip(request)
        if bus.is_suspicious(ip):
            request.state.suspicious = True
            logger.warning(
                "suspicious_ip_request",
                ip=ip,
                path=request.url.path,
                method=request.method,
                user_agent=request.headers.get("user-agent"),
            )
        return await call_next(request)


class InputScreeningMiddleware:
    """
    Screens JSON/form bodies, query strings and path segments.

    Written as a plain ASGI middleware so the sanitized body can be replayed
    to the application in place of the original one.
    """

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request = Request(scope, receive)
        if _is_exempt(request):
            await self.app(scope, receive, send)
            return

        screener: InputScreener = request.app.state.screener
        raw_body = await request.body()
        content_type = request.headers.get("content-type", "").split(";")[0].strip().lower()
        query: dict[str, list[str]] = {}
        for key, value in request.query_params.multi_items():
            query.setdefault(key, []).append(value)
        segments = [segment for segment in request.url.path.split("/") if segment]

        try:
            body = _parse_body(raw_body, content_type)
            screened = screener.screen(
                build_context(request),
                body=body,
                query=query or None,
                params=segments or None,
            )
        except PolicyViolation as exc:
            response = violation_response(exc)
            await response(scope, receive, send)
            return

        if body is not None and screened.body != body:
            raw_body = _encode_body(screened.body, content_type)
            scope = _with_content_length(scope, len(raw_body))
        if query and screened.query != query:
            scope = dict(scope)
            scope["query_string"] = urlencode(
                [(k, v) for k, values in screened.query.items() for v in values]
            ).encode()
        if segments and screened.params != segments:
            path = "/" + "/".join(screened.params)
            if request.url.path.endswith("/"):
                path += "/"
            scope = dict(scope)
            scope["path"] = path
            scope["raw_path"] = quote(path).encode()

        await self.app(scope, _replay(raw_body, receive), send)


def _parse_body(raw_body: bytes, content_type: str) -> Any:
    if not raw_body:
        return None
    try:
        if content_type == "application/json":
            return json.loads(raw_body)
        if content_type == "application/x-www-form-urlencoded":
            form: dict[str, list[str]] = {}
            for key, value in parse_qsl(raw_body.decode(), keep_blank_values=True):
                form.setdefault(key, []).append(value)
            return form
    except RecursionError:
        metrics.screening_rejections_total.labels(reason="validation").inc()
        raise InvalidInput(
            "VALIDATION_ERROR",
            "Invalid input data",
            details=[{"field": "$", "message": "nested too deeply", "location": "body"}],
        ) from None
    except (ValueError, UnicodeDecodeError):
        # Malformed bodies are left for the route handler to reject
        return None
    return None


def _encode_body(body: Any, content_type: str) -> bytes:
    if content_type == "application/x-www-form-urlencoded":
        return urlencode([(k, v) for k, values in body.items() for v in values]).encode()
    return json.dumps(body).encode()


def _with_content_length(scope: Scope, length: int) -> Scope:
    headers = [(k, v) for k, v in scope["headers"] if k.lower() != b"content-length"]
    headers.append((b"content-length", str(length).encode()))
    scope = dict(scope)
    scope["headers"] = headers
    return scope


def _replay(body: bytes, receive: Receive) -> Receive:
    sent = False

    async def replay() -> Message:
        nonlocal sent
        if not sent:
            sent = True
            return {"type": "http.request", "body": body, "more_body": False}
        return await receive()

    return replay


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Checks the general scope plus every scope mapped to the request path."""

    async def dispatch(self, request: Request, call_next: CallNext) -> Response:
        if _is_exempt(request):
            return await call_next(request)

        limiters: LimiterRegistry = request.app.state.limiters
        context = build_context(request)
        scopes = limiters.scopes_for(context.path, context.method)

        try:
            decisions = limiters.enforce(context, scopes)
        except PolicyViolation as exc:
            return violation_response(exc)

        response = await call_next(request)
        for name, value in limiters.response_headers(decisions).items():
            response.headers.setdefault(name, value)
        return response


def require_scope(scope: str) -> Callable[[Request, Response], Awaitable[Decision]]:
    """
    FastAPI dependency enforcing one scope on a single route.

    Useful for scopes whose key needs route information, such as the per-user
    scope behind authentication or a scope keyed on a path parameter.
    """

    async def dependency(request: Request, response: Response) -> Decision:
        limiters: LimiterRegistry = request.app.state.limiters
        decision = limiters.enforce(build_context(request), [scope])[-1]
        response.headers.update(limiters.get(scope).headers(decision))
        return decision

    return dependency
