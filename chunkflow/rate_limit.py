"""Shared slowapi limiter, keyed by client address.

Upload endpoints apply their own tighter limit via ``settings.upload_rate_limit``.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address, default_limits=["100/minute"])
