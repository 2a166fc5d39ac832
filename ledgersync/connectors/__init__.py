"""Provider connectors: Xero HTTP client, rate limiter and rate-limited executor."""

from .provider_client import ProviderClient
from .rate_limiter import RateLimiter, TokenBucket
from .xero_client import XeroClient

__all__ = ["ProviderClient", "RateLimiter", "TokenBucket", "XeroClient"]
