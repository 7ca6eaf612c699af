"""
JWT Session Authentication

Issues and verifies the HS256 session token carried in the ``access_token``
cookie (or an ``Authorization: Bearer`` header). The login flow that mints
tokens after an identity-provider callback lives outside this service.
"""

import os
import logging
from typing import Optional
from datetime import datetime, timezone, timedelta

import jwt

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"
ACCESS_TOKEN_COOKIE = "access_token"


def _get_jwt_secret() -> str:
    val = os.getenv("JWT_SECRET", "")
    if not val:
        raise RuntimeError(
            "JWT_SECRET environment variable is not set. "
            "Generate a random secret string and set it in .env or as an environment variable."
        )
    return val


def _get_jwt_expiry_hours() -> int:
    return int(os.getenv("JWT_EXPIRY_HOURS", "168"))  # 7 days default


def create_session_jwt(user_id: str, email: str, role: str = "free", provider: str = "") -> str:
    """
    Create a JWT for session authentication.

    Args:
        user_id: The internal user UUID
        email: User's email
        role: One of admin, vip, pay, free
        provider: Identity provider the user signed in with

    Returns:
        Encoded JWT string
    """
    payload = {
        "sub": user_id,
        "email": email,
        "role": role,
        "provider": provider,
        "iat": datetime.now(timezone.utc),
        "exp": datetime.now(timezone.utc) + timedelta(hours=_get_jwt_expiry_hours()),
    }
    return jwt.encode(payload, _get_jwt_secret(), algorithm=JWT_ALGORITHM)


def verify_session_jwt(token: str) -> Optional[dict]:
    """
    Verify a session JWT and extract the session claims.

    Returns:
        Dict with user_id, email, role, provider if valid; None if invalid/expired
    """
    try:
        payload = jwt.decode(token, _get_jwt_secret(), algorithms=[JWT_ALGORITHM])
        return {
            "user_id": payload["sub"],
            "email": payload.get("email", ""),
            "role": payload.get("role", "free"),
            "provider": payload.get("provider", ""),
        }
    except jwt.ExpiredSignatureError:
        logger.debug("JWT expired")
        return None
    except (jwt.InvalidTokenError, KeyError) as e:
        logger.debug(f"JWT invalid: {e}")
        return None
