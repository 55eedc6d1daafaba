"""
api/limiter.py -- Shared slowapi rate limiter instance.

Imported by api/main.py (mounted as middleware, stored on app.state) and by
api/routes/v1/auth.py (per-route limits with @limiter.limit()). A single
instance means every route shares one counter store.

Counters live in Redis when REDIS_URL is set, so limits hold across worker
processes. Without it they fall back to process memory. A Redis outage must
not lock users out of login, so storage errors are swallowed and slowapi
switches to its in-memory fallback until the backend recovers.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

_settings = get_settings()

limiter = Limiter(
    key_func=get_remote_address,
    storage_uri=_settings.redis_url or "memory://",
    in_memory_fallback_enabled=bool(_settings.redis_url),
    swallow_errors=True,
)
