"""
Auth utilities for the finplan API.

Identity is established upstream. We accept either an HS256 JWT signed
with AUTH_JWT_SECRET (user id in the 'sub' claim) or a trusted X-User-Id
header set by the gateway.
"""
import logging
from typing import Optional

import jwt
from fastapi import Header, Request

from finplan.core.config import settings
from finplan.core.errors import UnauthenticatedError

logger = logging.getLogger(__name__)


def verify_jwt(token: str, secret: Optional[str] = None, audience: Optional[str] = None) -> Optional[str]:
    """
    Verify an HS256 JWT and return its 'sub' claim.

    Returns None when no secret is configured (JWT auth disabled).

    Raises:
        UnauthenticatedError: expired, malformed or unsigned token
    """
    secret = secret or settings.AUTH_JWT_SECRET
    audience = audience or settings.AUTH_JWT_AUDIENCE
    if not secret:
        logger.debug("No AUTH_JWT_SECRET configured, skipping JWT validation")
        return None

    try:
        payload = jwt.decode(
            token,
            secret,
            algorithms=["HS256"],
            audience=audience,
            options={"verify_signature": True, "verify_exp": True, "verify_aud": bool(audience)},
        )
    except jwt.ExpiredSignatureError:
        raise UnauthenticatedError("Token expired")
    except jwt.InvalidTokenError as e:
        logger.debug(f"Invalid token: {e}")
        raise UnauthenticatedError("Invalid token")

    user_id = payload.get("sub")
    if not user_id:
        raise UnauthenticatedError("Token has no subject")
    return str(user_id)


def get_current_user_id(
    request: Request,
    x_user_id: Optional[str] = Header(None, description="Trusted upstream user id"),
) -> str:
    """
    Resolve the caller's user id.

    Priority:
    1. Bearer JWT from the Authorization header
    2. X-User-Id header
    3. 401 unauthenticated
    """
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        user_id = verify_jwt(auth_header[7:])
        if user_id:
            return user_id

    if x_user_id:
        return x_user_id

    raise UnauthenticatedError("Missing Authorization (Bearer JWT) or X-User-Id header")
