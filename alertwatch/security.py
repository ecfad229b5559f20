import uuid
from typing import Optional

from fastapi import Header, HTTPException, status

from alertwatch.core.settings import settings


def require_api_key(x_api_key: Optional[str] = Header(default=None, alias="X-API-Key")) -> bool:
    """Strict API key gate for the notification endpoints.

    - If API_KEY is not configured, deny by default (401).
    - If the provided key does not match, deny (401).
    - On success, return True for dependency chaining.
    """
    expected = (settings.API_KEY or "").strip()
    if not expected:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Server not configured with API_KEY")
    if x_api_key != expected:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API Key")
    return True


def current_user_id(x_user_id: Optional[str] = Header(default=None, alias="X-User-Id")) -> uuid.UUID:
    # identity is asserted by the upstream gateway; we only check the shape
    if not x_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-User-Id")
    try:
        return uuid.UUID(x_user_id)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid X-User-Id") from None
