"""Prometheus metrics for AbuseGuard."""

from prometheus_client import Counter, Gauge, Histogram, Info

from abuseguard import __version__


class AbuseGuardMetrics:
    """Metrics collection for AbuseGuard."""

    def __init__(self) -> None:
        # Application info
        self.info = Info("abuseguard", "AbuseGuard abuse-prevention service")
        self.info.info({"version": __version__, "algorithm": "fixed_window"})

        # Limiter
        self.limiter_decisions_total = Counter(
            "abuseguard_limiter_decisions_total",
            "Total number of scoped limiter decisions",
            ["scope", "result"],
        )

        self.limiter_failures_total = Counter(
            "abuseguard_limiter_failures_total",
            "Limiter checks that could not be evaluated",
            ["scope", "mode"],
        )

        self.limiter_check_duration = Histogram(
            "abuseguard_limiter_check_duration_seconds",
            "Duration of a single limiter check",
            ["scope"],
            buckets=[0.00001, 0.00005, 0.0001, 0.00025, 0.0005, 0.001, 0.005],
        )

        # Monitoring
        self.security_events_total = Counter(
            "abuseguard_security_events_total",
            "Security events recorded",
            ["event_type"],
        )

        self.security_alerts_total = Counter(
            "abuseguard_security_alerts_total",
            "Security alerts fired",
            ["event_type", "severity"],
        )

        self.suspicious_ips = Gauge(
            "abuseguard_suspicious_ips",
            "Number of source identities currently marked suspicious",
        )

        # Screening
        self.screening_rejections_total = Counter(
            "abuseguard_screening_rejections_total",
            "Requests rejected by input or file screening",
            ["reason"],
        )

        # HTTP
        self.http_requests_total = Counter(
            "abuseguard_http_requests_total",
            "Total HTTP requests",
            ["method", "endpoint", "status"],
        )

        self.http_request_duration = Histogram(
            "abuseguard_http_request_duration_seconds",
            "Duration of HTTP requests",
            ["method", "endpoint"],
            buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0],
        )


# Singleton instance
metrics = AbuseGuardMetrics()
