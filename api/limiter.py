"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in api/main.py (to mount as middleware). Every API route gets
Settings.api_rate_limit as its default limit; the per-action login,
registration and password-reset limits are enforced separately by
auth.ratelimit.RateLimiter, which is persistent and sliding-window.

Using a single shared instance ensures all routes share the same in-memory
counter store. If this were instantiated in each module separately, each
module would get its own isolated counter and rate limits would never trigger.

The key is the same client identifier the auth rate limiter uses, so a
client behind a proxy is counted by its forwarded address.
"""

from slowapi import Limiter
from starlette.requests import Request

from auth.ratelimit import client_identifier
from core.config import get_settings


def client_key(request: Request) -> str:
    return client_identifier(request.headers, request.client.host if request.client else None)


_settings = get_settings()

limiter = Limiter(
    key_func=client_key,
    default_limits=[_settings.api_rate_limit],
    storage_uri="memory://",
    enabled=_settings.api_rate_limit_enabled,
    headers_enabled=False,
)
