# Overview: Bearer token verification (and dev/test issuance) for the sync API.

"""
Token Service

Tokens are HS256 JWTs signed with JWT_SECRET. Issuance belongs to the auth
system outside the sync core; issue_token exists for the CLI and tests.

Claims:
- sub: user id
- storeId: tenant the principal is bound to (immutable for the token lifetime)
- exp / iat: standard expiry claims
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import jwt
from flask import current_app

DEFAULT_TOKEN_TTL = timedelta(hours=12)


class AuthenticationError(Exception):
    """Missing, malformed, or expired credentials (401)."""


@dataclass(frozen=True)
class Principal:
    user_id: str
    store_id: str


def issue_token(user_id: str, store_id: str, ttl: timedelta = DEFAULT_TOKEN_TTL) -> str:
    now = datetime.now(timezone.utc)
    claims = {
        "sub": str(user_id),
        "storeId": str(store_id),
        "iat": now,
        "exp": now + ttl,
    }
    return jwt.encode(
        claims,
        current_app.config["JWT_SECRET"],
        algorithm=current_app.config["JWT_ALGORITHM"],
    )


def decode_token(token: str) -> Principal:
    """Verify signature and expiry; return the bound principal."""
    try:
        claims = jwt.decode(
            token,
            current_app.config["JWT_SECRET"],
            algorithms=[current_app.config["JWT_ALGORITHM"]],
            options={"require": ["exp", "sub"]},
        )
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Token expired")
    except jwt.InvalidTokenError:
        raise AuthenticationError("Invalid token")

    store_id = claims.get("storeId")
    if not store_id:
        raise AuthenticationError("Token missing tenant context")
    return Principal(user_id=str(claims["sub"]), store_id=str(store_id))
