"""Operator JWTs for the /admin routes.

The operator login service issues these; this backend only verifies them.
``issue_token`` is kept for scripts and tests.
"""

import time
from typing import Any, Dict

import jwt

from settings import settings

ACCESS_TOKEN = "access"
OPERATOR_ROLE = "admin"


def issue_token(subject: str, *, role: str = OPERATOR_ROLE, ttl_seconds: int = 3600,
                token_type: str = ACCESS_TOKEN) -> str:
    now = int(time.time())
    payload: Dict[str, Any] = {
        "sub": subject,
        "type": token_type,
        "role": role,
        "iat": now,
        "exp": now + int(ttl_seconds),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> Dict[str, Any]:
    """Raises ``jwt.InvalidTokenError`` on a bad signature, expiry or missing claims."""
    return jwt.decode(
        token,
        settings.jwt_secret,
        algorithms=[settings.jwt_algorithm],
        options={"require": ["exp", "sub"]},
    )
