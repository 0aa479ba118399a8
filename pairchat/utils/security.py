from typing import Any, Dict

import jwt

from pairchat.core.config import settings
from pairchat.utils.mongo import is_field_safe


def decode_access_token(token: str) -> Dict[str, Any]:
    """Verify a token issued by the auth service and return its claims.

    Raises ``jwt.PyJWTError`` when the token is invalid or expired.
    """
    payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    if not payload.get("sub"):
        raise jwt.InvalidTokenError("Token has no subject")
    if not is_field_safe(str(payload["sub"])):
        raise jwt.InvalidTokenError("Token subject is not a valid user id")
    return payload


def identity_from_claims(payload: Dict[str, Any]) -> Dict[str, Any]:
    # shape used everywhere as current_user: the user id under "_id"
    return {
        "_id": str(payload["sub"]),
        "username": payload.get("username"),
        "avatar": payload.get("avatar"),
    }
