"""
verify.py
---------
Purpose:
    Bearer-token verification for API routes.

Notes:
    - Tokens are HS256 JWTs signed with settings.JWT_SECRET.
    - The `sub` claim is the user id every route acts for.
    - Provides `auth_dependency` for protected routes.
    - `admin_dependency` additionally requires the admin role claim, or a
      user id listed in settings.ADMIN_USER_IDS.
"""

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.config import settings

_security = HTTPBearer()


def verify_jwt(token: str) -> dict:
    try:
        return jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=["HS256"],
            audience=settings.JWT_AUDIENCE,
            options={"verify_exp": True, "verify_aud": settings.JWT_AUDIENCE is not None},
        )
    except jwt.PyJWTError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid authentication token: {e}",
            headers={"WWW-Authenticate": "Bearer"},
        ) from e


def auth_dependency(credentials: HTTPAuthorizationCredentials = Depends(_security)) -> dict:
    claims = verify_jwt(credentials.credentials)
    if not claims.get("sub"):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    return claims


def admin_dependency(claims: dict = Depends(auth_dependency)) -> dict:
    if claims.get("role") == settings.ADMIN_ROLE or claims["sub"] in settings.ADMIN_USER_IDS:
        return claims
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
