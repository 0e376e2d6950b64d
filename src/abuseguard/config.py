"""Configuration settings for AbuseGuard."""

from functools import lru_cache

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from abuseguard.exceptions import ConfigurationError
from abuseguard.models import KeyKind

GENERAL_SCOPE = "general"

REQUIRED_SCOPES = (
    GENERAL_SCOPE,
    "auth",
    "ai_generation",
    "upload",
    "blockchain",
    "user",
    "playlist",
)


class ScopeConfig(BaseModel):
    """Per-scope limiter configuration."""

    window_ms: int
    max: int
    error: str | None = None
    message: str = "Too many requests, please try again later."
    key: KeyKind = KeyKind.IP
    # Path parameter combined with the client IP, e.g. "playlist_id"
    key_param: str | None = None
    fail_open: bool = True


class RouteScope(BaseModel):
    """Maps a path prefix (and optionally methods) onto extra limiter scopes."""

    prefix: str
    scopes: list[str]
    methods: list[str] | None = None


class MonitoringConfig(BaseModel):
    enabled: bool = True
    alert_thresholds: dict[str, int] = Field(
        default_factory=lambda: {
            "failedLoginAttempts": 5,
            "rateLimitExceeded": 10,
            "suspiciousFileUploads": 3,
            "blockchainErrors": 5,
        }
    )
    alert_cooldown_ms: int = 5 * 60 * 1000


class FileUploadConfig(BaseModel):
    max_file_size: int = 50 * 1024 * 1024
    allowed_audio_types: list[str] = Field(
        default_factory=lambda: [
            "audio/mpeg",
            "audio/wav",
            "audio/mp3",
            "audio/mp4",
            "audio/aac",
            "audio/ogg",
        ]
    )
    allowed_image_types: list[str] = Field(
        default_factory=lambda: ["image/jpeg", "image/png", "image/gif", "image/webp"]
    )
    max_filename_length: int = 255

    @property
    def allowed_mime_types(self) -> list[str]:
        return [*self.allowed_audio_types, *self.allowed_image_types]


class ValidationConfig(BaseModel):
    max_string_length: int = 1000
    max_array_length: int = 100
    max_object_depth: int = 5


class ScreeningConfig(BaseModel):
    sanitize_body: bool = True
    sanitize_query: bool = True
    sanitize_params: bool = True
    reject_injection: bool = True
    enforce_limits: bool = True


class CleanupConfig(BaseModel):
    grace_windows: int = 1
    sweep_batch_size: int = 1000
    sweep_interval_seconds: float = 60.0


def _default_rate_limits() -> dict[str, ScopeConfig]:
    minute = 60 * 1000
    return {
        "general": ScopeConfig(
            window_ms=15 * minute,
            max=100,
            message="Too many requests, please try again later.",
        ),
        "auth": ScopeConfig(
            window_ms=15 * minute,
            max=5,
            message="Too many authentication attempts. Please try again later.",
            fail_open=False,
        ),
        "ai_generation": ScopeConfig(
            window_ms=60 * minute,
            max=50,
            error="AI_RATE_LIMIT_EXCEEDED",
            message="AI generation limit exceeded. Please try again in an hour.",
        ),
        "upload": ScopeConfig(
            window_ms=10 * minute,
            max=20,
            message="Too many upload requests. Please wait before uploading again.",
            fail_open=False,
        ),
        "blockchain": ScopeConfig(
            window_ms=5 * minute,
            max=10,
            message="Too many blockchain requests. Please wait before trying again.",
            fail_open=False,
        ),
        "user": ScopeConfig(
            window_ms=15 * minute,
            max=100,
            key=KeyKind.USER,
            message="Too many requests - please try again later.",
        ),
        "playlist": ScopeConfig(
            window_ms=5 * minute,
            max=50,
            message="Playlist operation limit exceeded. Please try again in a few minutes.",
        ),
    }


def _default_route_scopes() -> list[RouteScope]:
    return [
        RouteScope(prefix="/api/auth", scopes=["auth"]),
        RouteScope(prefix="/api/ai", scopes=["ai_generation"]),
        RouteScope(prefix="/api/upload", scopes=["upload"]),
        RouteScope(prefix="/api/ipfs", scopes=["upload"], methods=["POST", "PUT"]),
        RouteScope(prefix="/api/nft", scopes=["blockchain"], methods=["POST", "PUT", "DELETE"]),
        RouteScope(prefix="/api/flow-proxy", scopes=["blockchain"]),
        RouteScope(prefix="/api/playlists", scopes=["playlist"]),
        RouteScope(prefix="/api/user", scopes=["user"]),
    ]


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="ABUSEGUARD_", env_file=".env", env_nested_delimiter="__"
    )

    # Server
    host: str = "127.0.0.1"
    port: int = 8080
    debug: bool = False

    # Client identity
    trust_forwarded_for: bool = False

    # Rate limiting
    rate_limits: dict[str, ScopeConfig] = Field(default_factory=_default_rate_limits)
    route_scopes: list[RouteScope] = Field(default_factory=_default_route_scopes)
    exempt_paths: list[str] = Field(
        default_factory=lambda: ["/health", "/ready", "/metrics", "/evaluate", "/events"]
    )
    cleanup: CleanupConfig = Field(default_factory=CleanupConfig)

    # Screening
    screening: ScreeningConfig = Field(default_factory=ScreeningConfig)
    validation: ValidationConfig = Field(default_factory=ValidationConfig)
    file_upload: FileUploadConfig = Field(default_factory=FileUploadConfig)

    # Monitoring
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"

    # Metrics
    metrics_enabled: bool = True


def validate_settings(settings: Settings) -> None:
    """Reject configurations that would otherwise fail at request time."""
    for scope in REQUIRED_SCOPES:
        if scope not in settings.rate_limits:
            raise ConfigurationError(f"missing rate limit policy for scope '{scope}'")

    for name, scope_config in settings.rate_limits.items():
        if scope_config.window_ms <= 0:
            raise ConfigurationError(f"scope '{name}': window_ms must be positive")
        if scope_config.max <= 0:
            raise ConfigurationError(f"scope '{name}': max must be positive")

    for route in settings.route_scopes:
        for scope in route.scopes:
            if scope not in settings.rate_limits:
                raise ConfigurationError(
                    f"route '{route.prefix}' references unknown scope '{scope}'"
                )

    for event_type, threshold in settings.monitoring.alert_thresholds.items():
        if threshold <= 0:
            raise ConfigurationError(f"alert threshold for '{event_type}' must be positive")
    if settings.monitoring.alert_cooldown_ms <= 0:
        raise ConfigurationError("monitoring.alert_cooldown_ms must be positive")

    if settings.cleanup.grace_windows < 1:
        raise ConfigurationError("cleanup.grace_windows must be at least 1")
    if settings.cleanup.sweep_batch_size < 1:
        raise ConfigurationError("cleanup.sweep_batch_size must be at least 1")


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
