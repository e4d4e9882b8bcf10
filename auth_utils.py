"""
Session token utilities for the hosted identity provider.

The provider signs access tokens with HS256 using a project secret; this
service only verifies them and reads the subject and email claims.
"""

import jwt
from datetime import datetime, timedelta, timezone
from typing import Optional

from config import settings

# JWT configuration
ALGORITHM = "HS256"


def _require_secret() -> str:
    if not settings.auth_jwt_secret:
        raise ValueError("AUTH_JWT_SECRET is not set. Cannot verify session tokens.")
    return settings.auth_jwt_secret


def create_jwt(user_id: str, email: Optional[str] = None, expires_in: timedelta = timedelta(days=7)) -> str:
    """Create a session token in the provider's format (used by tests and local tooling)."""
    secret = _require_secret()
    payload = {
        "sub": user_id,
        "email": email,
        "exp": datetime.now(timezone.utc) + expires_in,
    }
    if settings.auth_jwt_audience:
        payload["aud"] = settings.auth_jwt_audience
    return jwt.encode(payload, secret, algorithm=ALGORITHM)


def create_expired_jwt(user_id: str, expired_seconds_ago: int = 1) -> str:
    """Create an already-expired session token for testing purposes."""
    return create_jwt(user_id, expires_in=timedelta(seconds=-expired_seconds_ago))


def decode_jwt(token: str) -> Optional[dict]:
    """Decode and verify a session token. Returns None if invalid or expired."""
    secret = _require_secret()
    options = {"require": ["sub", "exp"]}
    try:
        if settings.auth_jwt_audience:
            return jwt.decode(
                token, secret, algorithms=[ALGORITHM], audience=settings.auth_jwt_audience, options=options
            )
        return jwt.decode(token, secret, algorithms=[ALGORITHM], options={**options, "verify_aud": False})
    except jwt.ExpiredSignatureError:
        return None
    except jwt.InvalidTokenError:
        return None
