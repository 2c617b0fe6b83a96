from datetime import datetime, timedelta, timezone
from typing import Any, Dict

import jwt

from core.config import settings

ACCESS = "access"


def create_access_token(sub: str, extra: Dict[str, Any] | None = None) -> str:
    """Short-lived bearer token for the shopper or admin identified by ``sub``."""
    now = datetime.now(timezone.utc)
    payload = {
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)).timestamp()),
        "iss": settings.APP_NAME,
        **(extra or {}),
        "sub": sub,
        "type": ACCESS,
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALG)


def decode_access(token: str) -> Dict[str, Any]:
    payload = jwt.decode(
        token,
        settings.JWT_SECRET,
        algorithms=[settings.JWT_ALG],
        options={"require": ["exp", "sub"]},
    )
    if payload.get("type") != ACCESS:
        raise jwt.InvalidTokenError("Not an access token")
    return payload


def user_id_from_token(token: str) -> int:
    """Raises ``jwt.InvalidTokenError`` unless the token names a numeric user id."""
    subject = decode_access(token)["sub"]
    try:
        return int(subject)
    except (TypeError, ValueError):
        raise jwt.InvalidTokenError("Token subject is not a user id")
