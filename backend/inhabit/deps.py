from typing import Any, Optional

from fastapi import Header, HTTPException

from .auth import decode_access_token, user_id_from_claims


async def get_current_user(authorization: Optional[str] = Header(default=None)) -> dict[str, Any]:
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing bearer token")

    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(status_code=401, detail="Missing bearer token")

    claims = decode_access_token(token.strip())
    if claims is None:
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    user_id = user_id_from_claims(claims)
    if user_id is None:
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    return {"id": user_id}
