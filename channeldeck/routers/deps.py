"""
Shared router dependencies.
"""
from typing import Optional

from fastapi import Header, HTTPException

from channeldeck.config import get_settings


async def require_admin_key(x_admin_key: Optional[str] = Header(None, alias="X-Admin-Key")):
    """
    Require the X-Admin-Key header.
    Set CHANNELDECK_ADMIN_API_KEY environment variable to configure.
    """
    if x_admin_key != get_settings().admin_api_key:
        raise HTTPException(status_code=401, detail="Invalid or missing admin API key")
