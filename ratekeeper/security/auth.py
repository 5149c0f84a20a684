"""API key authentication for the admin routes.

Validates the X-API-Key header against the configured admin keys.
"""

import hmac

from fastapi import HTTPException, Security
from fastapi.security import APIKeyHeader

from ratekeeper.config.settings import get_settings

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


async def verify_admin_key(api_key: str | None = Security(api_key_header)) -> str:
    """FastAPI dependency that validates an admin API key.

    Returns a short, loggable label for the key (never the key itself).
    """
    if api_key is None:
        raise HTTPException(status_code=401, detail="Missing API key")

    match: str | None = None
    # Always compare against every key to keep timing constant
    for valid_key in get_settings().admin_api_keys_list:
        if hmac.compare_digest(api_key.encode(), valid_key.encode()):
            match = valid_key

    if match is None:
        raise HTTPException(status_code=403, detail="Invalid API key")
    return f"admin-{match[:8]}"
