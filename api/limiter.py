"""
api/limiter.py -- Shared slowapi rate limiter instance.

Covers the general API request budget (API_RATE_LIMIT, default 100/minute per
client address), applied to every route by SlowAPIMiddleware through
default_limits. Login brute-force protection is NOT done here -- that is the
fixed-window auth.rate_limit.RateLimiter inside SessionIssuer, which runs
before any account lookup and reports remaining attempts.

Using a single shared instance ensures all routes share the same in-memory
counter store. If this were instantiated in each module separately, each
module would get its own isolated counter and rate limits would never trigger.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[get_settings().api_rate_limit],
    storage_uri="memory://",
)
