"""Scoped rate limiting."""

from __future__ import annotations

import math
import time
from collections.abc import Callable, Iterable, Iterator

import structlog

from abuseguard.algorithms.fixed_window import WindowCounterRegistry
from abuseguard.clock import Clock
from abuseguard.config import GENERAL_SCOPE, RouteScope, ScopeConfig, Settings
from abuseguard.exceptions import (
    ConfigurationError,
    InternalFailure,
    PolicyViolation,
    RateLimitExceeded,
    ScopeUnavailable,
)
from abuseguard.metrics import metrics
from abuseguard.models import Decision, KeyKind, RequestContext, ScopePolicy
from abuseguard.monitor import SecurityEventBus

logger = structlog.get_logger()

KeyFunction = Callable[[RequestContext], str]


# === Key functions ===


def client_ip_key(context: RequestContext) -> str:
    if not context.ip:
        raise InternalFailure("request carries no client address")
    return context.ip


def user_key(context: RequestContext) -> str:
    """Authenticated user ID, falling back to the client IP for anonymous requests."""
    if context.user_id:
        return f"user:{context.user_id}"
    return f"ip:{client_ip_key(context)}"


def sub_resource_key(param: str) -> KeyFunction:
    """Key on client IP plus one path parameter, e.g. a playlist ID."""

    def key(context: RequestContext) -> str:
        return f"{client_ip_key(context)}:{context.params.get(param, '')}"

    return key


KEY_FUNCTIONS: dict[KeyKind, KeyFunction] = {
    KeyKind.IP: client_ip_key,
    KeyKind.USER: user_key,
}


def policy_from_config(name: str, config: ScopeConfig) -> ScopePolicy:
    if config.key_param:
        key_fn = sub_resource_key(config.key_param)
    else:
        key_fn = KEY_FUNCTIONS[config.key]
    return ScopePolicy(
        scope_name=name,
        window_seconds=config.window_ms / 1000,
        max_requests=config.max,
        key_fn=key_fn,
        error=config.error or f"{name.upper()}_RATE_LIMIT_EXCEEDED",
        message=config.message,
        fail_open=config.fail_open,
    )


class ScopedLimiter:
    """Applies one ScopePolicy against its own window counter registry."""

    def __init__(
        self,
        policy: ScopePolicy,
        clock: Clock,
        bus: SecurityEventBus | None = None,
        counters: WindowCounterRegistry | None = None,
    ) -> None:
        self.policy = policy
        self._clock = clock
        self._bus = bus
        if counters is None:
            counters = WindowCounterRegistry(policy.window_seconds)
        self._counters = counters

    @property
    def name(self) -> str:
        return self.policy.scope_name

    @property
    def counters(self) -> WindowCounterRegistry:
        return self._counters

    def check(self, context: RequestContext) -> Decision:
        """Evaluate the policy for one request and count it if admitted."""
        start_time = time.perf_counter()
        now = self._clock.now()

        try:
            key = self.policy.key_fn(context)
            admitted, remaining, reset_at = self._counters.hit(
                key, self.policy.max_requests, now
            )
        except Exception as e:
            decision = self._on_failure(e, now)
        else:
            decision = Decision(
                scope=self.name,
                admitted=admitted,
                limit=self.policy.max_requests,
                remaining=remaining,
                resetAt=reset_at,
                retryAfter=0 if admitted else max(0, math.ceil(reset_at - now)),
            )

        metrics.limiter_check_duration.labels(scope=self.name).observe(
            time.perf_counter() - start_time
        )
        metrics.limiter_decisions_total.labels(
            scope=self.name, result="allowed" if decision.admitted else "blocked"
        ).inc()

        if not decision.admitted and not decision.degraded:
            logger.warning(
                "rate_limit_exceeded",
                scope=self.name,
                ip=context.ip,
                path=context.path,
                user_agent=context.user_agent,
            )
            if self._bus is not None:
                self._bus.record_rate_limit_exceeded(context, self.name)

        return decision

    def _on_failure(self, error: Exception, now: float) -> Decision:
        mode = "open" if self.policy.fail_open else "closed"
        metrics.limiter_failures_total.labels(scope=self.name, mode=mode).inc()
        logger.error(
            "limiter_internal_failure",
            scope=self.name,
            mode=mode,
            error=str(error),
        )
        return Decision(
            scope=self.name,
            admitted=self.policy.fail_open,
            limit=self.policy.max_requests,
            remaining=self.policy.max_requests if self.policy.fail_open else 0,
            resetAt=now + self.policy.window_seconds,
            retryAfter=0 if self.policy.fail_open else math.ceil(self.policy.window_seconds),
            degraded=True,
        )

    def headers(self, decision: Decision) -> dict[str, str]:
        """Rate limit response headers. Reset is given in epoch seconds."""
        return {
            "X-RateLimit-Limit": str(decision.limit),
            "X-RateLimit-Remaining": str(decision.remaining),
            "X-RateLimit-Reset": str(math.ceil(decision.reset_at)),
        }

    def violation(self, decision: Decision) -> PolicyViolation:
        """Build the exception that answers a rejected decision."""
        headers = self.headers(decision)
        if decision.degraded:
            return ScopeUnavailable(
                f"{self.name.upper()}_UNAVAILABLE",
                "Service temporarily unavailable, please try again later.",
                headers=headers,
            )
        return RateLimitExceeded(
            self.policy.error,
            self.policy.message,
            retry_after=decision.retry_after,
            headers=headers,
        )

    def reset(self) -> None:
        self._counters.clear()


class LimiterRegistry:
    """All scoped limiters of a process, built once at startup and injected."""

    def __init__(
        self,
        limiters: Iterable[ScopedLimiter],
        clock: Clock,
        routes: Iterable[RouteScope] = (),
        grace_windows: int = 1,
        sweep_batch_size: int = 1000,
    ) -> None:
        self._limiters = {limiter.name: limiter for limiter in limiters}
        self._clock = clock
        self._routes = list(routes)
        self._grace_windows = grace_windows
        self._sweep_batch_size = sweep_batch_size

        for route in self._routes:
            for scope in route.scopes:
                if scope not in self._limiters:
                    raise ConfigurationError(
                        f"route '{route.prefix}' references unknown scope '{scope}'"
                    )

    @classmethod
    def from_settings(
        cls, settings: Settings, clock: Clock, bus: SecurityEventBus | None = None
    ) -> LimiterRegistry:
        limiters = [
            ScopedLimiter(policy_from_config(name, config), clock, bus)
            for name, config in settings.rate_limits.items()
        ]
        return cls(
            limiters,
            clock,
            routes=settings.route_scopes,
            grace_windows=settings.cleanup.grace_windows,
            sweep_batch_size=settings.cleanup.sweep_batch_size,
        )

    def get(self, scope: str) -> ScopedLimiter:
        try:
            return self._limiters[scope]
        except KeyError:
            raise ConfigurationError(f"no limiter configured for scope '{scope}'") from None

    def __contains__(self, scope: str) -> bool:
        return scope in self._limiters

    def __iter__(self) -> Iterator[ScopedLimiter]:
        return iter(self._limiters.values())

    def __len__(self) -> int:
        return len(self._limiters)

    def scopes_for(self, path: str, method: str = "GET") -> list[str]:
        """Scopes that apply to a request: general first, then every matching route."""
        scopes = [GENERAL_SCOPE] if GENERAL_SCOPE in self._limiters else []
        method = method.upper()
        for route in self._routes:
            if not path.startswith(route.prefix):
                continue
            if route.methods and method not in route.methods:
                continue
            for scope in route.scopes:
                if scope not in scopes:
                    scopes.append(scope)
        return scopes

    def check_all(self, context: RequestContext, scopes: Iterable[str]) -> list[Decision]:
        """
        Check scopes in order, stopping at the first rejection.

        The request may proceed only if the last decision returned is admitted.
        """
        decisions = []
        for scope in scopes:
            decision = self.get(scope).check(context)
            decisions.append(decision)
            if not decision.admitted:
                break
        return decisions

    def enforce(self, context: RequestContext, scopes: Iterable[str]) -> list[Decision]:
        """Like check_all, but raises the matching PolicyViolation on rejection."""
        decisions = self.check_all(context, scopes)
        if decisions and not decisions[-1].admitted:
            rejected = decisions[-1]
            raise self.get(rejected.scope).violation(rejected)
        return decisions

    def response_headers(self, decisions: list[Decision]) -> dict[str, str]:
        """Headers of the tightest admitting limiter."""
        if not decisions:
            return {}
        tightest = min(decisions, key=lambda d: d.remaining)
        return self.get(tightest.scope).headers(tightest)

    def sweep(self) -> int:
        now = self._clock.now()
        removed = 0
        for limiter in self._limiters.values():
            grace = limiter.policy.window_seconds * self._grace_windows
            removed += limiter.counters.sweep(now, grace, self._sweep_batch_size)
        return removed

    def reset(self) -> None:
        for limiter in self._limiters.values():
            limiter.reset()
        logger.info("rate_limits_reset", scopes=list(self._limiters))

