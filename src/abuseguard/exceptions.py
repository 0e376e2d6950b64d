"""Exception taxonomy for AbuseGuard."""

from typing import Any


class AbuseGuardError(Exception):
    """Base class for all AbuseGuard errors."""


class ConfigurationError(AbuseGuardError):
    """Raised at startup when a policy or threshold is missing or invalid."""


class InternalFailure(AbuseGuardError):
    """Raised when a limiter cannot reach a decision."""


class PolicyViolation(AbuseGuardError):
    """A request broke a policy and must be answered with a 4xx/5xx body."""

    status_code = 400

    def __init__(
        self,
        error: str,
        message: str,
        details: Any = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        super().__init__(message)
        self.error = error
        self.message = message
        self.details = details
        self.headers = headers or {}

    def to_body(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "success": False,
            "error": self.error,
            "message": self.message,
        }
        if self.details is not None:
            body["details"] = self.details
        return body


class InvalidInput(PolicyViolation):
    """Input screening or validation rejected the request."""

    status_code = 400


class RateLimitExceeded(PolicyViolation):
    """A scoped limiter rejected the request."""

    status_code = 429

    def __init__(
        self,
        error: str,
        message: str,
        retry_after: int,
        headers: dict[str, str] | None = None,
    ) -> None:
        super().__init__(error, message, headers=headers)
        self.retry_after = retry_after
        self.headers.setdefault("Retry-After", str(retry_after))

    def to_body(self) -> dict[str, Any]:
        body = super().to_body()
        body["retryAfter"] = self.retry_after
        return body


class ScopeUnavailable(PolicyViolation):
    """A fail-closed scope could not evaluate its limit."""

    status_code = 503
