"""Domain models for AbuseGuard."""

from collections.abc import Callable
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class KeyKind(StrEnum):
    """How a scope derives the counter key from a request."""

    IP = "ip"
    USER = "user"


class Severity(StrEnum):
    """Alert severity."""

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class SecurityEventType(StrEnum):
    """Security event types known to the monitor.

    Deployments may record other types as plain strings; only types with a
    configured threshold can raise alerts.
    """

    FAILED_LOGIN_ATTEMPTS = "failedLoginAttempts"
    RATE_LIMIT_EXCEEDED = "rateLimitExceeded"
    SUSPICIOUS_FILE_UPLOADS = "suspiciousFileUploads"
    BLOCKCHAIN_ERRORS = "blockchainErrors"
    XSS_ATTEMPTS = "xssAttempts"
    SQL_INJECTION_ATTEMPTS = "sqlInjectionAttempts"


class RequestContext(BaseModel):
    """The parts of an inbound request the abuse-prevention core looks at."""

    ip: str = "unknown"
    user_agent: str | None = Field(None, alias="userAgent")
    path: str = "/"
    method: str = "GET"
    user_id: str | None = Field(None, alias="userId")
    params: dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True)


class ScopePolicy(BaseModel):
    """Immutable rate limiting policy for one protected scope."""

    scope_name: str = Field(..., min_length=1)
    window_seconds: float = Field(..., gt=0)
    max_requests: int = Field(..., ge=1)
    key_fn: Callable[[RequestContext], str]
    error: str
    message: str
    fail_open: bool = True

    model_config = ConfigDict(frozen=True)


class Decision(BaseModel):
    """Outcome of a single limiter check."""

    scope: str
    admitted: bool
    limit: int
    remaining: int
    reset_at: float = Field(..., alias="resetAt")
    retry_after: int = Field(0, alias="retryAfter")
    degraded: bool = False

    model_config = ConfigDict(populate_by_name=True, serialize_by_alias=True)


class AlertOutcome(BaseModel):
    """Result of feeding one event into the alert aggregator."""

    fired: bool = False
    severity: Severity | None = None
    # Level the count has reached, reported even while the cooldown holds alerts back
    escalation: Severity | None = None
    count: int = 0


class SecurityEvent(BaseModel):
    """Structured record of a security-relevant occurrence."""

    type: str
    timestamp: str
    ip: str
    user_agent: str | None = Field(None, alias="userAgent")
    url: str
    method: str
    details: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True, serialize_by_alias=True)


class SecurityAlert(BaseModel):
    """Alert emitted when an event type crosses its threshold for a source."""

    type: str = "SECURITY_ALERT"
    event_type: str = Field(..., alias="eventType")
    ip: str
    count: int
    timestamp: str
    severity: Severity

    model_config = ConfigDict(populate_by_name=True, serialize_by_alias=True)


class SecurityStats(BaseModel):
    """Operator-facing snapshot of the monitor state."""

    suspicious_ips: list[str] = Field(default_factory=list, alias="suspiciousIPs")
    alert_counts: dict[str, int] = Field(default_factory=dict, alias="alertCounts")
    last_alerts: dict[str, str] = Field(default_factory=dict, alias="lastAlerts")

    model_config = ConfigDict(populate_by_name=True, serialize_by_alias=True)


# === API payloads ===


class EvaluateRequest(BaseModel):
    """Request to evaluate a scope on behalf of a client identity."""

    scope: str = Field("general", min_length=1)
    ip: str = Field(..., min_length=1)
    user_id: str | None = Field(None, alias="userId")
    path: str = "/"
    method: str = "GET"

    model_config = ConfigDict(populate_by_name=True)


class EvaluateResponse(BaseModel):
    """Response from a scope evaluation."""

    allow: bool
    scope: str
    limit: int
    remaining: int
    reset_at: int = Field(..., alias="resetAt")
    retry_after: int | None = Field(None, alias="retryAfter")

    model_config = ConfigDict(populate_by_name=True, serialize_by_alias=True)


class RecordEventRequest(BaseModel):
    """Security event reported by an adjacent handler."""

    event_type: str = Field(..., alias="eventType", min_length=1)
    ip: str = Field(..., min_length=1)
    details: dict[str, Any] = Field(default_factory=dict)
    user_agent: str | None = Field(None, alias="userAgent")
    path: str = "/"
    method: str = "POST"

    model_config = ConfigDict(populate_by_name=True)


class UploadScreenRequest(BaseModel):
    """Metadata of a file about to be uploaded."""

    filename: str = Field(..., min_length=1)
    content_type: str = Field(..., alias="contentType")
    size: int = Field(..., ge=0)

    model_config = ConfigDict(populate_by_name=True)
