import time
from typing import Any, Optional
from uuid import UUID

from jose import JWTError, jwt

from .config import settings


def decode_access_token(token: str) -> Optional[dict[str, Any]]:
    """Verify a bearer token issued by the auth service; None when unusable."""
    if not settings.JWT_SECRET:
        return None
    try:
        decoded = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError:
        return None

    exp = decoded.get("exp")
    if exp is None or exp < time.time():
        return None
    return decoded


def user_id_from_claims(claims: dict[str, Any]) -> Optional[UUID]:
    raw = claims.get("sub") or claims.get("userId")
    if raw is None:
        return None
    try:
        return UUID(str(raw))
    except ValueError:
        return None
