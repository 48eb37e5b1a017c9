"""
Bearer token validation for the topic chat API
"""
import logging
import os
from typing import Optional

from fastapi import HTTPException, Header
from jose import JWTError, jwt
from dotenv import load_dotenv

from .supabase_client import get_supabase_client, is_supabase_configured

load_dotenv()
load_dotenv('../.env')

logger = logging.getLogger(__name__)

# Same secret Supabase signs its access tokens with
JWT_SECRET = os.getenv("SUPABASE_JWT_SECRET")
JWT_ALGORITHM = "HS256"
JWT_AUDIENCE = "authenticated"


def _decode_locally(token: str) -> dict:
    """Verify the token signature without a round trip to Supabase."""
    try:
        claims = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM], audience=JWT_AUDIENCE)
    except JWTError as e:
        logger.warning(f"⚠️ [Auth] Token rejected: {e}")
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    if not claims.get("sub"):
        raise HTTPException(status_code=401, detail="Token has no subject")
    return {
        "id": claims["sub"],
        "email": claims.get("email"),
        "role": claims.get("role", "authenticated"),
    }


def _fetch_from_supabase(token: str) -> dict:
    supabase = get_supabase_client()
    user_response = supabase.auth.get_user(token)

    if not user_response or not user_response.user:
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    user = user_response.user
    return {
        "id": user.id,
        "email": user.email,
        "role": user.role or "authenticated",
    }


async def get_current_user(authorization: Optional[str] = Header(None)) -> dict:
    """
    Validate the bearer token and return the learner

    Args:
        authorization: Bearer token from Authorization header

    Returns:
        dict: id, email and role of the learner

    Raises:
        HTTPException: If the header is missing or the token is invalid
    """
    if not authorization:
        raise HTTPException(status_code=401, detail="Authorization header required")

    if not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Invalid authorization header format")

    token = authorization[len("Bearer "):].strip()

    if JWT_SECRET:
        return _decode_locally(token)

    if not is_supabase_configured():
        raise HTTPException(status_code=503, detail="Authentication is not configured")

    try:
        return _fetch_from_supabase(token)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"❌ [Auth] Token validation failed: {e}")
        raise HTTPException(status_code=401, detail="Could not validate credentials")
