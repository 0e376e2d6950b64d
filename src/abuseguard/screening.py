"""Input and file screening.

Sanitization strips markup that can execute in a browser; injection detection
flags payloads that look like SQL or encoded script injection. Both walk
arbitrarily nested JSON-like values.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

import structlog

from abuseguard.config import FileUploadConfig, ScreeningConfig, ValidationConfig
from abuseguard.exceptions import InvalidInput
from abuseguard.metrics import metrics
from abuseguard.models import RequestContext
from abuseguard.monitor import SecurityEventBus

logger = structlog.get_logger()

# === Sanitization patterns ===

_DANGEROUS_ELEMENT = re.compile(
    r"<\s*(script|iframe)\b[^>]*>.*?<\s*/\s*\1\s*>", re.IGNORECASE | re.DOTALL
)
# Unpaired opening or closing tags, including a tag cut off before its ">"
_DANGEROUS_TAG = re.compile(r"<\s*/?\s*(?:script|iframe)\b[^>]*>?", re.IGNORECASE)
# Browsers drop tabs and newlines inside a URI scheme, so "java\tscript:" still runs
_SCHEME_GAP = r"[\t\r\n]*"
_SCRIPT_URI = re.compile(
    "(?:" + _SCHEME_GAP.join("java") + "|" + _SCHEME_GAP.join("vb") + ")"
    + _SCHEME_GAP + _SCHEME_GAP.join("script") + r"\s*:",
    re.IGNORECASE,
)
_TAG = re.compile(r"<[a-zA-Z][^<>]*>?")
_EVENT_HANDLER = re.compile(
    r"""\s+on[a-z]+\s*=\s*(?:"[^"]*"|'[^']*'|[^\s>]*)""", re.IGNORECASE
)

# === Injection patterns ===

_SQL_UNION = re.compile(r"\bunion(?:\s+all)?\s+select\b", re.IGNORECASE)
# A closed string literal followed directly by a statement keyword
_SQL_QUOTED_STATEMENT = re.compile(
    r"['\"`]\s*(?:select|insert|update|delete|drop|create|alter|exec(?:ute)?|truncate)\s",
    re.IGNORECASE,
)
_SQL_STACKED = re.compile(
    r";\s*(?:select|insert|update|delete|drop|create|alter|exec(?:ute)?|truncate|shutdown|grant)\b",
    re.IGNORECASE,
)
_SQL_TAUTOLOGY = re.compile(
    r"['\"]\s*\)?\s*(?:or|and)\s+['\"]?\w+['\"]?\s*(?:=|<|>|like\b)", re.IGNORECASE
)
_SQL_QUOTE_COMMENT = re.compile(r"['\"]\s*(?:--|#|/\*)")
_ENCODED_MARKUP = re.compile(
    r"(?:<|%3c|%253c|&lt;|&#0*60;|&#x0*3c;|\\u003c|\\x3c)\s*/?\s*(?:script|iframe)\b",
    re.IGNORECASE,
)


def _strip_event_handlers(match: re.Match[str]) -> str:
    return _EVENT_HANDLER.sub("", match.group(0))


def _sanitize_text(text: str) -> str:
    # Repeat until nothing changes: removing one construct can expose another.
    # Every pass only deletes characters, so the loop terminates.
    previous = None
    while text != previous:
        previous = text
        text = _DANGEROUS_ELEMENT.sub("", text)
        text = _DANGEROUS_TAG.sub("", text)
        text = _SCRIPT_URI.sub("", text)
        text = _TAG.sub(_strip_event_handlers, text)
    return text


def sanitize(value: Any) -> Any:
    """Recursively strip script markup from strings, keys and nested containers."""
    if isinstance(value, str):
        return _sanitize_text(value)
    if isinstance(value, dict):
        return {
            (_sanitize_text(k) if isinstance(k, str) else k): sanitize(v)
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [sanitize(item) for item in value]
    return value


def _match_text(text: str) -> str | None:
    if _ENCODED_MARKUP.search(text):
        return "encoded_markup"
    if _SQL_STACKED.search(text):
        return "sql_stacked_statement"
    if _SQL_TAUTOLOGY.search(text):
        return "sql_tautology"
    if _SQL_QUOTE_COMMENT.search(text):
        return "sql_quote_comment"
    if _SQL_UNION.search(text):
        return "sql_union"
    if _SQL_QUOTED_STATEMENT.search(text):
        return "sql_quoted_statement"
    return None


def find_injection(value: Any, path: str = "") -> tuple[str, str] | None:
    """Return (field path, pattern name) of the first suspicious string, if any."""
    if isinstance(value, str):
        pattern = _match_text(value)
        return (path or "$", pattern) if pattern else None
    if isinstance(value, dict):
        for key, item in value.items():
            field = f"{path}.{key}" if path else str(key)
            if isinstance(key, str):
                pattern = _match_text(key)
                if pattern:
                    return field, pattern
            found = find_injection(item, field)
            if found:
                return found
        return None
    if isinstance(value, (list, tuple)):
        for index, item in enumerate(value):
            found = find_injection(item, f"{path}[{index}]")
            if found:
                return found
    return None


def looks_like_injection(value: Any) -> bool:
    return find_injection(value) is not None


def check_structure(value: Any, limits: ValidationConfig) -> list[dict[str, str]]:
    """List every place where ``value`` exceeds the configured size limits."""
    problems: list[dict[str, str]] = []

    def walk(item: Any, path: str, depth: int) -> None:
        if isinstance(item, str):
            if len(item) > limits.max_string_length:
                problems.append(
                    {
                        "field": path or "$",
                        "message": f"must be at most {limits.max_string_length} characters",
                    }
                )
            return
        if isinstance(item, (dict, list, tuple)) and depth > limits.max_object_depth:
            problems.append(
                {"field": path or "$", "message": f"nested deeper than {limits.max_object_depth}"}
            )
            return
        if isinstance(item, dict):
            for key, child in item.items():
                walk(child, f"{path}.{key}" if path else str(key), depth + 1)
        elif isinstance(item, (list, tuple)):
            if len(item) > limits.max_array_length:
                problems.append(
                    {
                        "field": path or "$",
                        "message": f"must contain at most {limits.max_array_length} items",
                    }
                )
                return
            for index, child in enumerate(item):
                walk(child, f"{path}[{index}]", depth + 1)

    walk(value, "", 1)
    return problems


@dataclass
class ScreenedInput:
    body: Any
    query: Any
    params: Any


class InputScreener:
    """Sanitizes request payloads and rejects suspected injection attempts."""

    def __init__(
        self,
        config: ScreeningConfig,
        limits: ValidationConfig,
        bus: SecurityEventBus | None = None,
    ) -> None:
        self._config = config
        self._limits = limits
        self._bus = bus

    def screen(
        self,
        context: RequestContext,
        body: Any = None,
        query: Any = None,
        params: Any = None,
    ) -> ScreenedInput:
        """
        Screen the parts of one request.

        Raises:
            InvalidInput: VALIDATION_ERROR for oversized input,
                INVALID_INPUT for a suspected injection
        """
        parts = {"body": body, "query": query, "params": params}
        enabled = {
            "body": self._config.sanitize_body,
            "query": self._config.sanitize_query,
            "params": self._config.sanitize_params,
        }

        if self._config.enforce_limits:
            problems = []
            for name, value in parts.items():
                for problem in check_structure(value, self._limits):
                    problems.append({**problem, "location": name})
            if problems:
                metrics.screening_rejections_total.labels(reason="validation").inc()
                logger.warning(
                    "input_validation_failed",
                    ip=context.ip,
                    path=context.path,
                    errors=problems,
                )
                raise InvalidInput("VALIDATION_ERROR", "Invalid input data", details=problems)

        screened = {}
        for name, value in parts.items():
            if not enabled[name] or value is None:
                screened[name] = value
                continue
            cleaned = sanitize(value)
            if cleaned != value:
                logger.warning("markup_stripped", ip=context.ip, path=context.path, location=name)
                if self._bus is not None:
                    self._bus.record_xss_attempt(context, field=name)
            screened[name] = cleaned

        if self._config.reject_injection:
            for name, value in screened.items():
                found = find_injection(value)
                if found is None:
                    continue
                field, pattern = found
                metrics.screening_rejections_total.labels(reason="injection").inc()
                logger.warning(
                    "injection_detected",
                    ip=context.ip,
                    path=context.path,
                    location=name,
                    field=field,
                    pattern=pattern,
                )
                if self._bus is not None:
                    self._bus.record_sql_injection_attempt(
                        context, field=f"{name}.{field}", pattern=pattern
                    )
                raise InvalidInput("INVALID_INPUT", "Invalid characters detected in input")

        return ScreenedInput(**screened)


_UNSAFE_FILENAME_CHARS = re.compile(r'[\x00-\x1f\x7f<>:"|?*]')


def sanitize_filename(filename: str, max_length: int = 255) -> str:
    """Strip directories, markup and characters that are unsafe in file names."""
    name = re.split(r"[\\/]", _sanitize_text(filename))[-1]
    name = _UNSAFE_FILENAME_CHARS.sub("", name).strip().lstrip(".")
    if len(name) > max_length:
        stem, dot, ext = name.rpartition(".")
        if dot and len(ext) < max_length:
            name = stem[: max_length - len(ext) - 1] + "." + ext
        else:
            name = name[:max_length]
    return name or "upload"


class FileScreener:
    """Size, type and filename checks for uploaded files."""

    def __init__(self, config: FileUploadConfig, bus: SecurityEventBus | None = None) -> None:
        self._config = config
        self._bus = bus

    def check(
        self, context: RequestContext, filename: str, content_type: str, size: int
    ) -> str:
        """
        Validate one file and return its sanitized name.

        Raises:
            InvalidInput: FILE_TOO_LARGE or INVALID_FILE_TYPE
        """
        if size > self._config.max_file_size:
            self._reject(context, filename, content_type, size, "file_too_large")
            limit_mb = self._config.max_file_size // (1024 * 1024)
            raise InvalidInput("FILE_TOO_LARGE", f"File size exceeds {limit_mb}MB limit")

        mime_type = content_type.split(";")[0].strip().lower()
        if mime_type not in self._config.allowed_mime_types:
            self._reject(context, filename, content_type, size, "invalid_file_type")
            raise InvalidInput("INVALID_FILE_TYPE", "File type not allowed")

        return sanitize_filename(filename, self._config.max_filename_length)

    def _reject(
        self, context: RequestContext, filename: str, content_type: str, size: int, reason: str
    ) -> None:
        metrics.screening_rejections_total.labels(reason=reason).inc()
        logger.warning(
            "file_rejected",
            ip=context.ip,
            filename=filename,
            mimetype=content_type,
            size=size,
            reason=reason,
        )
        if self._bus is not None:
            self._bus.record_suspicious_file_upload(
                context, filename=filename, mimetype=content_type, size=size, reason=reason
            )
