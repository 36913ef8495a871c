"""
Rate limiting for the unauthenticated playlist endpoints.
"""
from slowapi import Limiter
from slowapi.util import get_remote_address

from channeldeck.config import get_settings

limiter = Limiter(key_func=get_remote_address)


def public_limit() -> str:
    return f"{get_settings().rate_limit_per_minute}/minute"
