"""
api/limiter.py -- The one slowapi Limiter for the whole app.

api/main.py mounts it (SlowAPIMiddleware looks for app.state.limiter) and
api/routes/v1/auth.py decorates the login route with it. Counters live in
this instance, so a second Limiter would silently never trip.

The decorator is applied at import time, before any lifespan runs, which is
why this module reads get_settings() itself. RATE_LIMIT_ENABLED=false turns
every limit off (the test suite does this).
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings


def login_rate_limit() -> str:
    """Limit string for POST /auth/login, read from LOGIN_RATE_LIMIT."""
    return get_settings().login_rate_limit


limiter = Limiter(
    key_func=get_remote_address,
    storage_uri="memory://",
    enabled=get_settings().rate_limit_enabled,
)
