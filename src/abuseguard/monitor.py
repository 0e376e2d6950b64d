"""Security event monitoring and alerting."""

from __future__ import annotations

import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import structlog

from abuseguard.clock import Clock
from abuseguard.metrics import metrics
from abuseguard.models import (
    AlertOutcome,
    RequestContext,
    SecurityAlert,
    SecurityEvent,
    SecurityEventType,
    SecurityStats,
    Severity,
)

logger = structlog.get_logger()

AlertHandler = Callable[[SecurityAlert], None]


def _isoformat(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=UTC).isoformat()


def severity_for(threshold: int, count: int) -> Severity:
    """Map an event count onto a severity relative to its threshold."""
    if count >= threshold * 3:
        return Severity.CRITICAL
    if count >= threshold * 2:
        return Severity.HIGH
    if count >= threshold:
        return Severity.MEDIUM
    return Severity.LOW


@dataclass(slots=True)
class AlertCounter:
    count: int
    created_at: float


class AlertAggregator:
    """
    Counts events per (event type, source) and fires cooldown-gated alerts.

    A counter lives for one cooldown period from its creation and is then
    treated as absent, so a source that goes quiet starts again from zero.
    """

    def __init__(
        self,
        thresholds: Mapping[str, int],
        cooldown_seconds: float,
        clock: Clock,
        handlers: list[AlertHandler] | None = None,
    ) -> None:
        self._thresholds = dict(thresholds)
        self._cooldown = cooldown_seconds
        self._clock = clock
        self._handlers = list(handlers or [])
        self._lock = threading.Lock()
        self._counters: dict[tuple[str, str], AlertCounter] = {}
        self._last_alert: dict[tuple[str, str], float] = {}
        self._suspicious: set[str] = set()

    @property
    def cooldown_seconds(self) -> float:
        return self._cooldown

    def threshold_for(self, event_type: str) -> int | None:
        return self._thresholds.get(str(event_type))

    def add_handler(self, handler: AlertHandler) -> None:
        self._handlers.append(handler)

    def observe(self, event_type: str, source_key: str, now: float | None = None) -> AlertOutcome:
        """Feed one event; returns whether an alert fired and at what severity."""
        event_type = str(event_type)
        threshold = self._thresholds.get(event_type)
        if not threshold:
            return AlertOutcome()

        if now is None:
            now = self._clock.now()
        key = (event_type, source_key)

        with self._lock:
            counter = self._counters.get(key)
            if counter is None or now - counter.created_at >= self._cooldown:
                counter = AlertCounter(count=0, created_at=now)
                self._counters[key] = counter
            counter.count += 1
            count = counter.count

            if count < threshold:
                return AlertOutcome(count=count)

            severity = severity_for(threshold, count)
            last_alert = self._last_alert.get(key)
            if last_alert is not None and now - last_alert < self._cooldown:
                return AlertOutcome(fired=False, escalation=severity, count=count)

            self._last_alert[key] = now
            self._suspicious.add(source_key)
            suspicious_total = len(self._suspicious)

        metrics.suspicious_ips.set(suspicious_total)
        self._emit(
            SecurityAlert(
                eventType=event_type,
                ip=source_key,
                count=count,
                timestamp=_isoformat(now),
                severity=severity,
            )
        )
        return AlertOutcome(fired=True, severity=severity, escalation=severity, count=count)

    def _emit(self, alert: SecurityAlert) -> None:
        metrics.security_alerts_total.labels(
            event_type=alert.event_type, severity=alert.severity.value
        ).inc()
        logger.error("security_alert", **alert.model_dump(by_alias=False))

        for handler in self._handlers:
            try:
                handler(alert)
            except Exception:
                logger.exception("alert_handler_failed", event_type=alert.event_type)

    def is_suspicious(self, source_key: str) -> bool:
        return source_key in self._suspicious

    def count_for(self, event_type: str, source_key: str, now: float | None = None) -> int:
        """Live count for a type/source pair; 0 once it has expired."""
        if now is None:
            now = self._clock.now()
        with self._lock:
            counter = self._counters.get((str(event_type), source_key))
            if counter is None or now - counter.created_at >= self._cooldown:
                return 0
            return counter.count

    def sweep(self, now: float | None = None) -> int:
        """Evict expired counters and alert timestamps that no longer gate anything."""
        if now is None:
            now = self._clock.now()
        with self._lock:
            expired = [k for k, c in self._counters.items() if now - c.created_at >= self._cooldown]
            for key in expired:
                del self._counters[key]
            stale = [k for k, t in self._last_alert.items() if now - t >= self._cooldown]
            for key in stale:
                del self._last_alert[key]
        return len(expired)

    def stats(self, now: float | None = None) -> SecurityStats:
        if now is None:
            now = self._clock.now()
        with self._lock:
            counts = {
                f"{event_type}:{source}": counter.count
                for (event_type, source), counter in self._counters.items()
                if now - counter.created_at < self._cooldown
            }
            last_alerts = {
                f"{event_type}:{source}": _isoformat(ts)
                for (event_type, source), ts in self._last_alert.items()
            }
            suspicious = sorted(self._suspicious)
        return SecurityStats(suspiciousIPs=suspicious, alertCounts=counts, lastAlerts=last_alerts)

    def clear_suspicious(self) -> None:
        with self._lock:
            self._suspicious.clear()
        metrics.suspicious_ips.set(0)

    def reset(self) -> None:
        """Drop every counter and alert timestamp. Suspicious sources are kept."""
        with self._lock:
            self._counters.clear()
            self._last_alert.clear()


class SecurityEventBus:
    """Records security events and forwards them to the alert aggregator."""

    def __init__(self, aggregator: AlertAggregator, clock: Clock, enabled: bool = True) -> None:
        self._aggregator = aggregator
        self._clock = clock
        self._enabled = enabled

    @property
    def aggregator(self) -> AlertAggregator:
        return self._aggregator

    def record(
        self,
        event_type: str,
        details: dict[str, Any] | None = None,
        context: RequestContext | None = None,
    ) -> AlertOutcome:
        """
        Record a security event.

        Never raises: a failure here is logged and must not fail the request
        that reported the event.
        """
        try:
            context = context or RequestContext()
            now = self._clock.now()
            event = SecurityEvent(
                type=str(event_type),
                timestamp=_isoformat(now),
                ip=context.ip,
                userAgent=context.user_agent,
                url=context.path,
                method=context.method,
                details=details or {},
            )
            logger.warning("security_event", **event.model_dump(by_alias=False))
            metrics.security_events_total.labels(event_type=event.type).inc()

            if not self._enabled:
                return AlertOutcome()
            return self._aggregator.observe(event.type, event.ip, now)
        except Exception:
            logger.exception("security_event_record_failed", event_type=str(event_type))
            return AlertOutcome()

    def record_failed_login(
        self,
        context: RequestContext,
        identifier: str | None = None,
        reason: str | None = None,
        **details: Any,
    ) -> AlertOutcome:
        return self.record(
            SecurityEventType.FAILED_LOGIN_ATTEMPTS,
            {"identifier": identifier, "reason": reason, **details},
            context,
        )

    def record_rate_limit_exceeded(
        self, context: RequestContext, limit_type: str = "general"
    ) -> AlertOutcome:
        return self.record(
            SecurityEventType.RATE_LIMIT_EXCEEDED,
            {"limitType": limit_type, "endpoint": context.path},
            context,
        )

    def record_suspicious_file_upload(
        self,
        context: RequestContext,
        filename: str | None = None,
        mimetype: str | None = None,
        size: int | None = None,
        reason: str | None = None,
    ) -> AlertOutcome:
        return self.record(
            SecurityEventType.SUSPICIOUS_FILE_UPLOADS,
            {"filename": filename, "mimetype": mimetype, "size": size, "reason": reason},
            context,
        )

    def record_blockchain_error(
        self, context: RequestContext, operation: str | None = None, error: str | None = None
    ) -> AlertOutcome:
        return self.record(
            SecurityEventType.BLOCKCHAIN_ERRORS,
            {"operation": operation, "error": error},
            context,
        )

    def record_xss_attempt(
        self, context: RequestContext, field: str | None = None, **details: Any
    ) -> AlertOutcome:
        return self.record(SecurityEventType.XSS_ATTEMPTS, {"field": field, **details}, context)

    def record_sql_injection_attempt(
        self, context: RequestContext, field: str | None = None, pattern: str | None = None
    ) -> AlertOutcome:
        return self.record(
            SecurityEventType.SQL_INJECTION_ATTEMPTS,
            {"field": field, "pattern": pattern},
            context,
        )

    def is_suspicious(self, ip: str) -> bool:
        return self._aggregator.is_suspicious(ip)

    def stats(self) -> SecurityStats:
        return self._aggregator.stats()

    def clear_suspicious_ips(self) -> None:
        self._aggregator.clear_suspicious()
        logger.info("suspicious_ips_cleared")

    def reset_alert_counts(self) -> None:
        self._aggregator.reset()
        logger.info("alert_counts_reset")

    def sweep(self) -> int:
        return self._aggregator.sweep()
