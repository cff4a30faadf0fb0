import os

from fastapi import Header, HTTPException
from jose import JWTError, jwt

import checkout.settings  # noqa: F401  loads .env

ADMIN_ROLE = "admin"


def decode_claims(token: str) -> dict:
    secret = os.getenv("JWT_SECRET")
    if not secret:
        raise JWTError("JWT_SECRET is not configured")
    claims = jwt.decode(token, secret, algorithms=["HS256"])
    if not claims.get("sub"):
        raise JWTError("token has no subject")
    return claims


def bearer_claims(authorization: str = Header(None)) -> dict:
    try:
        scheme, token = (authorization or "").split()
        if scheme.lower() != "bearer":
            raise ValueError("not a bearer token")
        return decode_claims(token)
    except (ValueError, JWTError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")


def current_user_id(authorization: str = Header(None)) -> str:
    """Bearer token -> user id (the `sub` claim)."""
    return str(bearer_claims(authorization)["sub"])


def require_admin(authorization: str = Header(None)) -> str:
    claims = bearer_claims(authorization)
    if claims.get("role") != ADMIN_ROLE:
        raise HTTPException(status_code=403, detail="Admin role required")
    return str(claims["sub"])
