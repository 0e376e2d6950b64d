"""Unit tests for domain models and the exception taxonomy."""

import pytest
from pydantic import ValidationError

from abuseguard.exceptions import InvalidInput, PolicyViolation, RateLimitExceeded
from abuseguard.limiter import client_ip_key
from abuseguard.models import (
    Decision,
    EvaluateRequest,
    RecordEventRequest,
    RequestContext,
    ScopePolicy,
    UploadScreenRequest,
)


def _policy(**overrides):
    fields = {
        "scope_name": "general",
        "window_seconds": 60,
        "max_requests": 10,
        "key_fn": client_ip_key,
        "error": "RATE_LIMIT_EXCEEDED",
        "message": "Too many requests",
    }
    fields.update(overrides)
    return ScopePolicy(**fields)


class TestScopePolicy:
    """Tests for ScopePolicy."""

    def test_valid(self):
        policy = _policy()

        assert policy.fail_open is True
        assert policy.key_fn(RequestContext(ip="1.1.1.1")) == "1.1.1.1"

    @pytest.mark.parametrize(
        "overrides",
        [{"window_seconds": 0}, {"max_requests": 0}, {"scope_name": ""}],
    )
    def test_invalid(self, overrides):
        with pytest.raises(ValidationError):
            _policy(**overrides)

    def test_frozen(self):
        policy = _policy()

        with pytest.raises(ValidationError):
            policy.max_requests = 20


class TestPayloads:
    """Tests for request and response models."""

    def test_request_context_aliases(self):
        context = RequestContext(ip="1.1.1.1", userAgent="curl", userId="u1")

        assert context.user_agent == "curl"
        assert context.user_id == "u1"
        assert context.path == "/"

    def test_decision_serializes_by_alias(self):
        decision = Decision(scope="auth", admitted=False, limit=5, remaining=0, resetAt=10.0)

        dumped = decision.model_dump()

        assert dumped["resetAt"] == 10.0
        assert dumped["retryAfter"] == 0
        assert dumped["degraded"] is False

    def test_evaluate_request_defaults(self):
        request = EvaluateRequest(ip="1.1.1.1")

        assert request.scope == "general"
        assert request.user_id is None

    def test_evaluate_request_requires_ip(self):
        with pytest.raises(ValidationError):
            EvaluateRequest(ip="")

    def test_record_event_request(self):
        request = RecordEventRequest(eventType="failedLoginAttempts", ip="9.9.9.9")

        assert request.event_type == "failedLoginAttempts"
        assert request.details == {}

    def test_upload_request_rejects_negative_size(self):
        with pytest.raises(ValidationError):
            UploadScreenRequest(filename="a.mp3", contentType="audio/mpeg", size=-1)


class TestExceptions:
    """Tests for PolicyViolation bodies."""

    def test_body_without_details(self):
        exc = PolicyViolation("SOME_ERROR", "Something failed")

        assert exc.to_body() == {
            "success": False,
            "error": "SOME_ERROR",
            "message": "Something failed",
        }

    def test_body_with_details(self):
        exc = InvalidInput("VALIDATION_ERROR", "Invalid input data", details=[{"field": "a"}])

        assert exc.to_body()["details"] == [{"field": "a"}]
        assert exc.status_code == 400

    def test_rate_limit_exceeded(self):
        exc = RateLimitExceeded("AUTH_RATE_LIMIT_EXCEEDED", "Slow down", retry_after=42)

        assert exc.status_code == 429
        assert exc.headers == {"Retry-After": "42"}
        assert exc.to_body()["retryAfter"] == 42
