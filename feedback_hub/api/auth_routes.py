"""
Session endpoints for the admin surface.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from feedback_hub.api.dependencies import get_token_blacklist
from feedback_hub.auth.middleware import get_admin_token
from feedback_hub.auth.token_blacklist import TokenBlacklist

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/auth", tags=["auth"])


class LogoutResponse(BaseModel):
    msg: str


@router.post("/logout", response_model=LogoutResponse)
async def logout(
    token: Optional[str] = Depends(get_admin_token),
    blacklist: TokenBlacklist = Depends(get_token_blacklist),
):
    """Revoke the presented token until it would have expired."""
    if not token:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No token presented",
        )
    blacklist.revoke(token)
    logger.info("Admin token revoked")
    return LogoutResponse(msg="Logged out successfully")
