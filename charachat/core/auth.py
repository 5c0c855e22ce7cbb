"""
Auth adapter for the credits API.

Tokens are issued by the auth service; this module only verifies them and
extracts the account id from the 'sub' claim. Falls back to the X-User-Id
header when no JWT secret is configured (local development and tests).
"""
import logging
from typing import Optional

import jwt
from fastapi import Header, HTTPException, Request

from charachat.core.config import settings
from charachat.core.logging import bind_account_id

logger = logging.getLogger(__name__)


def verify_jwt(token: str) -> Optional[str]:
    """
    Verify a bearer JWT and return its subject.

    Returns None when no JWT secret is configured.

    Raises:
        HTTPException 401: Invalid or expired token
    """
    if not settings.JWT_SECRET:
        logger.debug("No JWT_SECRET configured, skipping JWT validation")
        return None

    algorithms = [alg.strip() for alg in settings.JWT_ALGORITHMS.split(",") if alg.strip()]
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=algorithms,
            options={"verify_signature": True, "verify_exp": True},
        )
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError as e:
        logger.debug(f"Invalid token: {e}")
        raise HTTPException(status_code=401, detail="Invalid token")

    account_id = payload.get("sub")
    if not account_id:
        raise HTTPException(status_code=401, detail="Token has no subject")
    return str(account_id)


async def get_current_account_id(
    request: Request,
    x_user_id: Optional[str] = Header(None, description="Development fallback: account id"),
) -> str:
    """
    Resolve the calling account.

    Priority:
    1. Bearer JWT from Authorization header
    2. X-User-Id header (only when JWT verification is not configured)
    3. 401 Unauthorized
    """
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        account_id = verify_jwt(auth_header[7:])
        if account_id:
            request.state.user_id = account_id
            bind_account_id(account_id)
            return account_id

    if x_user_id and not settings.JWT_SECRET:
        request.state.user_id = x_user_id
        bind_account_id(x_user_id)
        return x_user_id

    raise HTTPException(status_code=401, detail="Missing Authorization (Bearer JWT) or X-User-Id header")
