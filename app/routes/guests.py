"""
Guest endpoints - anonymous reporter creation, action quota and blocking.
"""

import logging

from fastapi import APIRouter, Depends, status

from app.models.base import BaseResponse
from app.models.guest import BlockRequest, GuestStatus
from app.models.identity import VoterIdentity
from app.services.guest_service import get_guest_service
from app.utils.security import resolve_registered_identity

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/guests", tags=["Guests"])


@router.post("", status_code=status.HTTP_201_CREATED, response_model=BaseResponse)
async def create_guest():
    guest = get_guest_service().create_guest()
    return BaseResponse(message="Guest user created successfully", data=GuestStatus.from_guest(guest))


@router.get("/{guest_id}", response_model=BaseResponse)
async def get_guest(guest_id: str):
    guest = get_guest_service().get_guest(guest_id)
    return BaseResponse(message="Guest information retrieved successfully", data=GuestStatus.from_guest(guest))


@router.post("/{guest_id}/actions", response_model=BaseResponse)
async def consume_guest_action(guest_id: str):
    """Spend one guest action; 403 with a registration hint once exhausted."""
    guest = get_guest_service().try_consume_guest_action(guest_id)
    message = (
        "Action recorded successfully"
        if guest.can_perform_action
        else "Action recorded. You have reached your limit - please register to continue."
    )
    return BaseResponse(message=message, data=GuestStatus.from_guest(guest))


@router.post("/{guest_id}/allowance", response_model=BaseResponse)
async def refresh_guest_allowance(guest_id: str):
    guest = get_guest_service().refresh_guest_allowance(guest_id)
    return BaseResponse(message="Guest allowance refreshed", data=GuestStatus.from_guest(guest))


@router.post("/{guest_id}/block", response_model=BaseResponse)
async def block_guest(
    guest_id: str,
    request: BlockRequest,
    actor: VoterIdentity = Depends(resolve_registered_identity),
):
    guest = get_guest_service().block_guest(guest_id, request.reason, request.duration_hours)
    logger.info(f"Guest {guest_id} blocked by {actor.key}")
    return BaseResponse(message="Guest blocked", data=GuestStatus.from_guest(guest))


@router.delete("/{guest_id}/block", response_model=BaseResponse)
async def unblock_guest(guest_id: str, actor: VoterIdentity = Depends(resolve_registered_identity)):
    guest = get_guest_service().unblock_guest(guest_id)
    logger.info(f"Guest {guest_id} unblocked by {actor.key}")
    return BaseResponse(message="Guest unblocked", data=GuestStatus.from_guest(guest))
