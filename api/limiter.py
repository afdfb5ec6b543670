"""
api/limiter.py -- Shared slowapi rate limiter instance.

api/main.py mounts it as middleware; api/routes/v1/auth.py applies the
per-IP login limit with @limiter.limit().

One shared instance means one in-memory counter store. Separate instances
per module would each count on their own and the login limit would never
trigger. Tests call limiter.reset() between cases.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")
