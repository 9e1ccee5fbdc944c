from .api_client import DEFAULT_PAGE_SIZE, RemoteApiClient, RemoteResult
from .rate_limiter import RateLimiter
from .schema_cache import SchemaCache

__all__ = [
    "DEFAULT_PAGE_SIZE",
    "RemoteApiClient",
    "RemoteResult",
    "RateLimiter",
    "SchemaCache",
]
