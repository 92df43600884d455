"""
Incident endpoints - creation, lookup, proximity search, workflow, moderation and upvotes.

Domain errors raised by the services are turned into HTTP responses by the
EngineError handler in app.main.
"""

from typing import Optional
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.core.errors import EngineError
from app.core.settings import settings
from app.models.base import BaseResponse
from app.models.identity import VoterIdentity
from app.models.incident import (
    AssignRequest,
    DuplicateCandidate,
    FlagRequest,
    IncidentCreated,
    IncidentDraft,
    IncidentType,
    MediaAttachment,
    TransitionRequest,
)
from app.services.incident_service import get_incident_service
from app.utils.security import resolve_identity, resolve_registered_identity

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/incidents", tags=["Incidents"])


def _unexpected(action: str, e: Exception) -> HTTPException:
    logger.error(f"❌ {action} failed: {e}", exc_info=True)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"{action} failed: {str(e)}",
    )


@router.post("", status_code=status.HTTP_201_CREATED, response_model=BaseResponse)
async def report_incident(draft: IncidentDraft, reporter: VoterIdentity = Depends(resolve_identity)):
    """
    Report a new incident.

    Guests spend one action. The response lists nearby active incidents of
    the same type as possible duplicates.
    """
    try:
        incident, candidates = get_incident_service().create_incident(draft, reporter)
    except EngineError:
        raise
    except Exception as e:
        raise _unexpected("Incident creation", e)

    return BaseResponse(
        message="Incident reported successfully",
        data=IncidentCreated(incident=incident, duplicate_candidates=candidates),
    )


@router.get("/nearby", response_model=BaseResponse)
async def nearby_incidents(
    longitude: float = Query(..., description="Longitude of the search center"),
    latitude: float = Query(..., description="Latitude of the search center"),
    radius: float = Query(settings.DEFAULT_SEARCH_RADIUS_METERS, description="Radius in meters"),
    type: Optional[IncidentType] = Query(None, description="Only incidents of this type"),
):
    """Active incidents within ``radius`` meters, nearest first."""
    try:
        matches = get_incident_service().find_nearby((longitude, latitude), radius, type)
    except EngineError:
        raise
    except Exception as e:
        raise _unexpected("Nearby search", e)

    return BaseResponse(
        message=f"{len(matches)} incident(s) found",
        data=[DuplicateCandidate(incident=incident, distance_meters=distance) for incident, distance in matches],
    )


@router.get("/{incident_id}", response_model=BaseResponse)
async def get_incident(incident_id: str):
    return BaseResponse(
        message="Incident retrieved successfully",
        data=get_incident_service().get_incident(incident_id),
    )


@router.post("/{incident_id}/status", response_model=BaseResponse)
async def transition_incident(
    incident_id: str,
    request: TransitionRequest,
    actor: VoterIdentity = Depends(resolve_registered_identity),
):
    """Move an incident through the review/response workflow."""
    try:
        incident = get_incident_service().transition_status(
            incident_id, request.status, actor, request.reason, request.duplicate_of, request.assignee_id
        )
    except EngineError:
        raise
    except Exception as e:
        raise _unexpected("Status transition", e)

    return BaseResponse(message=f"Incident status changed to {incident.status.value}", data=incident)


@router.post("/{incident_id}/assign", response_model=BaseResponse)
async def assign_incident(
    incident_id: str,
    request: AssignRequest,
    actor: VoterIdentity = Depends(resolve_registered_identity),
):
    """Assign a verified incident, or reassign one already in response."""
    try:
        incident = get_incident_service().assign_incident(
            incident_id, request.assignee_id, actor, request.priority, request.notes
        )
    except EngineError:
        raise
    except Exception as e:
        raise _unexpected("Assignment", e)

    return BaseResponse(message=f"Incident assigned to {incident.current_assignee}", data=incident)


@router.post("/{incident_id}/flag", response_model=BaseResponse)
async def flag_incident(
    incident_id: str,
    request: FlagRequest,
    actor: VoterIdentity = Depends(resolve_identity),
):
    try:
        incident = get_incident_service().flag_incident(incident_id, request.reason, actor)
    except EngineError:
        raise
    except Exception as e:
        raise _unexpected("Flagging", e)

    return BaseResponse(message="Incident flagged for review", data=incident)


@router.post("/{incident_id}/upvote", response_model=BaseResponse)
async def upvote_incident(incident_id: str, voter: VoterIdentity = Depends(resolve_identity)):
    try:
        incident = get_incident_service().add_upvote(incident_id, voter)
    except EngineError:
        raise
    except Exception as e:
        raise _unexpected("Upvote", e)

    return BaseResponse(message="Incident upvoted successfully", data=incident)


@router.delete("/{incident_id}/upvote", response_model=BaseResponse)
async def remove_incident_upvote(incident_id: str, voter: VoterIdentity = Depends(resolve_identity)):
    try:
        incident = get_incident_service().remove_upvote(incident_id, voter)
    except EngineError:
        raise
    except Exception as e:
        raise _unexpected("Upvote removal", e)

    return BaseResponse(message="Upvote removed successfully", data=incident)


@router.post("/{incident_id}/media", response_model=BaseResponse)
async def attach_media(
    incident_id: str,
    attachment: MediaAttachment,
    actor: VoterIdentity = Depends(resolve_identity),
):
    try:
        incident = get_incident_service().add_media(incident_id, attachment, actor)
    except EngineError:
        raise
    except Exception as e:
        raise _unexpected("Media attachment", e)

    return BaseResponse(message="Media attached successfully", data=incident)


@router.post("/{incident_id}/score", response_model=BaseResponse)
async def recompute_incident_score(incident_id: str):
    score = get_incident_service().recompute_score(incident_id)
    return BaseResponse(
        message="Verification score recomputed",
        data={"incident_id": incident_id, "verification_score": score},
    )
