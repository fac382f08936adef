"""
verify.py
---------
Purpose:
    JWT verification for portal tokens (HS256, shared secret).

Notes:
    - Tokens are issued by the portal's auth service; this service only verifies.
    - `auth_dependency` yields a CallerContext(user_id, role).
    - `require_admin` is the single place admin-only routes check the role.
"""

from dataclasses import dataclass

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from jobflow.config import settings

ADMIN_ROLE = "admin"

_security = HTTPBearer()


@dataclass(frozen=True, slots=True)
class CallerContext:
    user_id: str
    role: str = "customer"

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE


def verify_jwt(token: str) -> dict:
    try:
        options = {"verify_exp": True, "verify_aud": settings.JWT_AUDIENCE is not None}
        return jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
            audience=settings.JWT_AUDIENCE,
            options=options,
        )
    except jwt.PyJWTError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid authentication token: {e}",
            headers={"WWW-Authenticate": "Bearer"},
        ) from e


def auth_dependency(
    credentials: HTTPAuthorizationCredentials = Depends(_security),
) -> CallerContext:
    claims = verify_jwt(credentials.credentials)
    user_id = claims.get("sub")
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    return CallerContext(user_id=str(user_id), role=claims.get("role") or "customer")


def require_admin(caller: CallerContext = Depends(auth_dependency)) -> CallerContext:
    if not caller.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin role required")
    return caller
