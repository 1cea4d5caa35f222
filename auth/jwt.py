import os
import jwt
import logging
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger("sp5s.auth.jwt")

@dataclass
class UserContext:
    id: str
    email: Optional[str] = None

def verify_supabase_jwt(token: str) -> Optional[UserContext]:
    """
    Verifies a Supabase JWT token and returns the user context.

    Args:
        token: The JWT token string (without 'Bearer ' prefix)

    Returns:
        Optional[UserContext]: the signed-in user, or None if the JWT secret
                               is not configured (allowing fallback to legacy auth).

    Raises:
        jwt.ExpiredSignatureError: If the token has expired.
        jwt.InvalidTokenError: If the token is invalid (bad signature, etc).
    """
    secret = os.getenv("SUPABASE_JWT_SECRET")
    if not secret:
        logger.warning("SUPABASE_JWT_SECRET is not configured. JWT authentication is disabled.")
        return None

    try:
        # Supabase signs with HS256; aud is 'authenticated' but not checked
        payload = jwt.decode(
            token,
            secret,
            algorithms=["HS256"],
            options={"verify_aud": False}
        )
    except jwt.ExpiredSignatureError as e:
        logger.error(f"JWT Error: Token has expired. Details: {e}")
        raise
    except jwt.InvalidSignatureError as e:
        logger.error(f"JWT Error: Signature verification failed. Details: {e}")
        raise
    except jwt.InvalidTokenError as e:
        logger.error(f"JWT Error: Invalid token. Details: {e}")
        raise

    user_id = payload.get("sub")
    if not user_id:
        raise jwt.InvalidTokenError("Token missing 'sub' claim")

    return UserContext(id=user_id, email=payload.get("email"))
