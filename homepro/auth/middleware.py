"""Bearer token verification dependency for FastAPI.

Sign-up and sign-in live in the hosted BaaS; this service only verifies the
JWTs it issues. ``sub`` is the user id and the role comes from
``app_metadata.role`` (falling back to a top-level ``role`` claim).
"""

import uuid

from fastapi import Depends, HTTPException, Request
from jose import JWTError, jwt

from homepro.config import settings

ROLES = ("homeowner", "contractor", "admin")


class AuthenticatedUser:
    """Container for the verified user context."""

    def __init__(self, user_id: uuid.UUID, role: str, email: str | None = None) -> None:
        self.user_id = user_id
        self.role = role
        self.email = email

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def decode_token(token: str) -> dict:
    return jwt.decode(
        token,
        settings.jwt_secret,
        algorithms=[settings.jwt_algorithm],
        audience=settings.jwt_audience,
    )


async def verify_request(request: Request) -> AuthenticatedUser:
    """Verify the BaaS-issued JWT on the incoming request."""
    auth_header = request.headers.get("Authorization")
    if not auth_header:
        raise HTTPException(status_code=401, detail="Missing authentication headers")
    if not auth_header.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Invalid authorization scheme")

    try:
        claims = decode_token(auth_header[7:])
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    try:
        user_id = uuid.UUID(claims["sub"])
    except (KeyError, TypeError, ValueError):
        raise HTTPException(status_code=401, detail="Token has no valid subject")

    role = (claims.get("app_metadata") or {}).get("role") or claims.get("role")
    if role not in ROLES:
        raise HTTPException(status_code=403, detail="Account has no marketplace role")

    return AuthenticatedUser(user_id=user_id, role=role, email=claims.get("email"))


async def require_admin(user: AuthenticatedUser = Depends(verify_request)) -> AuthenticatedUser:
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required")
    return user
