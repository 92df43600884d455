"""
Caller identity resolution for the HTTP layer.

Authentication happens upstream; by the time a request reaches these routes
the gateway has resolved the caller and forwards it in headers:
- X-User-ID: registered user id
- X-Guest-ID: guest id (anonymous reporter)
"""

import logging
from typing import Optional

from fastapi import Header, HTTPException, status

from app.models.identity import VoterIdentity

logger = logging.getLogger(__name__)


def resolve_identity(
    user_id: Optional[str] = Header(None, alias="X-User-ID", description="Registered user ID"),
    guest_id: Optional[str] = Header(None, alias="X-Guest-ID", description="Guest ID"),
) -> VoterIdentity:
    """
    Build the caller's VoterIdentity from forwarded headers.

    A registered id wins when both are present (a guest who just signed up).
    """
    if user_id and user_id.strip():
        return VoterIdentity.registered(user_id.strip())
    if guest_id and guest_id.strip():
        return VoterIdentity.guest(guest_id.strip())

    logger.warning("Request without caller identity headers rejected")
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Missing caller identity (X-User-ID or X-Guest-ID)",
    )


def resolve_registered_identity(
    user_id: Optional[str] = Header(None, alias="X-User-ID", description="Registered user ID"),
) -> VoterIdentity:
    """Officials moving incidents through the workflow must be registered."""
    if not user_id or not user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Registered user required (X-User-ID)",
        )
    return VoterIdentity.registered(user_id.strip())
