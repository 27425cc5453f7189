from jose import JWTError, jwt
from typing import Optional, Dict
import os
import logging

logger = logging.getLogger(__name__)

# Supabase signs session tokens with the project's JWT secret
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_AUDIENCE = "authenticated"


def _jwt_secret() -> str:
    return (os.getenv("SUPABASE_JWT_SECRET") or "").strip()


def decode_access_token(token: str) -> Optional[Dict]:
    """Decode and validate a Supabase access token. None when invalid or expired."""
    secret = _jwt_secret()
    if not secret:
        logger.error("SUPABASE_JWT_SECRET not set - cannot verify access tokens")
        return None
    try:
        payload = jwt.decode(token, secret, algorithms=[JWT_ALGORITHM], audience=JWT_AUDIENCE)
    except JWTError:
        return None
    if not payload.get("sub"):
        return None
    return payload
