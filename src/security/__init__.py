"""Security module: rate limiting, password hashing, audit trail."""

from src.security.rate_limiter import RateLimiter, RateLimitRule, get_client_ip

__all__ = ["RateLimitRule", "RateLimiter", "get_client_ip"]
