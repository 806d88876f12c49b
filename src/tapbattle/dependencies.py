"""Shared FastAPI dependencies.

Player identity is resolved upstream (chat-platform init data -> internal
user id) and arrives as the ``X-User-Id`` header. Operator, game-server and
cron calls authenticate with ``X-Internal-Key``.
"""

import secrets

from fastapi import Depends, Header, HTTPException, status

from tapbattle.config import Settings, get_settings
from tapbattle.redis_client import get_redis_or_none


def get_current_user_id(x_user_id: int | None = Header(default=None)) -> int:
    """Require the caller's internal user id."""
    if x_user_id is None or x_user_id <= 0:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid X-User-Id header",
        )
    return x_user_id


def is_internal(
    x_internal_key: str | None = Header(default=None),
    settings: Settings = Depends(get_settings),  # noqa: B008
) -> bool:
    """True when the request carries the internal API key."""
    if not x_internal_key:
        return False
    return secrets.compare_digest(x_internal_key, settings.internal_api_key)


def require_internal_key(internal: bool = Depends(is_internal)) -> None:  # noqa: FBT001
    """Reject callers without the internal API key."""
    if not internal:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Internal API key required",
        )


def get_publisher() -> object | None:
    """Redis client used to fan out room events, if available."""
    return get_redis_or_none()
