"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in api/main.py (to mount as middleware) and in the route modules
(to apply per-route limits with @limiter.limit()).

A single shared instance means all routes share one in-memory counter store.
Instantiating it per module would give each module its own counters and the
limits would never trigger.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")

# Limit strings are read once; slowapi evaluates them per request.
LOGIN_LIMIT = get_settings().login_rate_limit
OTP_LIMIT = get_settings().otp_rate_limit
