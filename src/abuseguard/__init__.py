"""AbuseGuard: rate limiting and security monitoring in front of API handlers."""

__version__ = "0.1.0"
