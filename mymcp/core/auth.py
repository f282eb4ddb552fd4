"""
Auth utilities.

Validates Clerk JWTs and resolves the local user for the request.
Falls back to X-User-Id / X-User-Email headers when ALLOW_HEADER_AUTH is on
(development and tests).
"""
from fastapi import Header, HTTPException, Request
from typing import Optional
import logging

import jwt

from mymcp.core.config import settings
from mymcp.features.users.service import get_or_create_user
from mymcp.models.user import User

logger = logging.getLogger("mymcp")


def verify_clerk_jwt(token: str) -> Optional[dict]:
    """
    Verify a Clerk JWT and return its claims.

    Args:
        token: JWT from Authorization header (Bearer {token})

    Returns:
        Claims dict, or None when no CLERK_SECRET_KEY is configured

    Raises:
        HTTPException 401: Invalid or expired token
    """
    if not settings.CLERK_SECRET_KEY:
        logger.debug("No CLERK_SECRET_KEY configured, skipping JWT validation")
        return None

    options = {"verify_signature": True, "verify_exp": True, "verify_aud": bool(settings.CLERK_AUDIENCE)}
    try:
        payload = jwt.decode(
            token,
            settings.CLERK_SECRET_KEY,
            algorithms=["HS256", "RS256"],
            audience=settings.CLERK_AUDIENCE or None,
            issuer=settings.CLERK_ISSUER or None,
            options=options,
        )
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError as e:
        logger.debug(f"Invalid token: {e}")
        raise HTTPException(status_code=401, detail="Invalid token")

    if not payload.get("sub"):
        raise HTTPException(status_code=401, detail="Invalid token")
    return payload


def get_current_user(
    request: Request,
    x_user_id: Optional[str] = Header(None, description="Development/test subject id"),
    x_user_email: Optional[str] = Header(None, description="Development/test email"),
) -> User:
    """
    Resolve the calling user.

    Priority:
    1. Clerk JWT from Authorization header
    2. X-User-Id header (when ALLOW_HEADER_AUTH)
    3. Raise 401 Unauthorized

    The local user is created on first sight.
    """
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        claims = verify_clerk_jwt(auth_header[7:])
        if claims:
            return get_or_create_user(
                claims["sub"],
                email=claims.get("email"),
                first_name=claims.get("given_name"),
                last_name=claims.get("family_name"),
            )

    if x_user_id and settings.ALLOW_HEADER_AUTH:
        return get_or_create_user(x_user_id, email=x_user_email)

    raise HTTPException(
        status_code=401,
        detail="Missing Authorization (Bearer JWT) or X-User-Id header",
    )
