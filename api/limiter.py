"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in api/main.py (to mount as middleware) and in the route modules
that take unauthenticated writes (api/routes/v1/auth.py for login and
registration, api/routes/v1/waitlist.py for signup) to apply per-route limits
with @limiter.limit(). Limit strings come from Settings.login_rate_limit and
Settings.signup_rate_limit.

Using a single shared instance ensures all routes share the same in-memory
counter store. If this were instantiated in each module separately, each
module would get its own isolated counter and rate limits would never trigger.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")
