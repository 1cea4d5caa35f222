from fastapi import Header, HTTPException
from typing import Optional
from auth.jwt import verify_supabase_jwt, UserContext
import jwt
import logging
import os

logger = logging.getLogger("sp5s.auth")

async def get_current_user(
    authorization: Optional[str] = Header(None),
    x_user_id: Optional[str] = Header(None, alias="x-user-id"),
) -> UserContext:
    """
    Dependency to get the current user.
    Prioritizes 'Authorization: Bearer <token>'.
    The 'x-user-id' header is only honored while SUPABASE_JWT_SECRET is unset
    (local development and the mock Graph setup); once JWT auth is configured
    a valid bearer token is required.
    """
    jwt_enabled = bool(os.getenv("SUPABASE_JWT_SECRET"))

    # 1. Try JWT Authentication
    if authorization:
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() == "bearer" and token:
            try:
                user_context = verify_supabase_jwt(token)
                if user_context is not None:
                    return user_context
                logger.warning("JWT token provided but SUPABASE_JWT_SECRET not configured, falling back to legacy authentication")
            except jwt.ExpiredSignatureError:
                raise HTTPException(status_code=401, detail="Token has expired")
            except jwt.InvalidSignatureError:
                raise HTTPException(status_code=401, detail="Invalid token: Signature verification failed")
            except jwt.InvalidTokenError as e:
                raise HTTPException(status_code=401, detail=f"Invalid token: {str(e)}")

    # 2. Legacy header, development only
    if x_user_id and not jwt_enabled:
        return UserContext(id=x_user_id)

    if x_user_id:
        logger.warning("Rejected x-user-id header: JWT authentication is enabled")
        raise HTTPException(status_code=401, detail="Not authenticated. A bearer token is required.")

    # 3. No credentials provided
    raise HTTPException(
        status_code=401,
        detail="Not authenticated. Missing Authorization header or x-user-id header."
    )
