"""
Authentication for the admin endpoints.

Admin requests present an API key, either as ``X-API-Key`` or as
``Authorization: Bearer <key>``. Keys come from ADMIN_API_KEYS; revoked
tokens are rejected until their blacklist entry expires.
"""

import hashlib
import hmac
import logging
from typing import Iterable, Optional

from fastapi import Header, HTTPException, Request, status

logger = logging.getLogger(__name__)


def extract_token(x_api_key: Optional[str], authorization: Optional[str]) -> Optional[str]:
    """Token from X-API-Key, or from a Bearer Authorization header."""
    if x_api_key:
        return x_api_key.strip()
    if authorization and authorization.startswith("Bearer "):
        return authorization[len("Bearer "):].strip() or None
    return None


def key_matches(token: str, keys: Iterable[str]) -> bool:
    """Constant-time comparison against every configured key."""
    digest = hashlib.sha256(token.encode("utf-8")).digest()
    matched = False
    for key in keys:
        candidate = hashlib.sha256(key.encode("utf-8")).digest()
        matched |= hmac.compare_digest(digest, candidate)
    return matched


async def get_admin_token(
    request: Request,
    x_api_key: Optional[str] = Header(None, description="Admin API key"),
    authorization: Optional[str] = Header(None, description="Bearer token (alternative to X-API-Key)"),
) -> Optional[str]:
    """
    Dependency guarding admin endpoints.

    Returns:
        The presented token, or None when no admin keys are configured
        (development mode, anonymous access)

    Raises:
        HTTPException 401: Missing, invalid or revoked token
    """
    services = request.app.state.services
    keys = services.settings.admin_api_keys
    token = extract_token(x_api_key, authorization)

    if not keys:
        return token

    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="API key required. Provide X-API-Key header or Authorization: Bearer token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if services.token_blacklist.is_revoked(token):
        logger.warning("Rejected revoked admin token")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has been revoked",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not key_matches(token, keys):
        logger.warning("Rejected invalid admin API key")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return token
