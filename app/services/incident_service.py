"""
Incident Service - the operations exposed by the incident lifecycle engine.

Flow for mutations:
1. Counter Service: guest quota / upvote uniqueness
2. Status Workflow Engine: state changes
3. Trust Scorer: score recomputed inside the same conditional write
Creation also asks the Proximity Matcher for duplicate candidates first.
"""

from typing import Dict, List, Optional, Tuple, Union
import logging
import uuid

from app.core.errors import (
    TOO_MANY_FILES,
    ConcurrencyConflictError,
    ValidationError,
)
from app.core.settings import settings
from app.models.base import utc_now
from app.models.identity import VoterIdentity, VoterKind
from app.models.incident import (
    MAX_REASON_LENGTH,
    DuplicateCandidate,
    Incident,
    IncidentDraft,
    IncidentFlag,
    IncidentStatus,
    IncidentType,
    MediaAttachment,
    Severity,
    StatusHistoryEntry,
)
from app.services import trust_scorer
from app.services.audit_hook import AuditHook, get_audit_hook
from app.services.counter_service import CounterService, duplicate_upvote_error, upvote_closed_error
from app.services.lookups import fetch_incident, incident_not_found
from app.services.proximity_matcher import Coordinates, ProximityMatcher
from app.services.status_workflow import StatusWorkflowEngine, build_assignment
from app.store.base import INCIDENTS, AtomicStore, DocumentExistsError, DocumentNotFoundError
from app.utils.geo import cells_for_point, validate_coordinates

logger = logging.getLogger(__name__)


class IncidentService:
    """Facade over the counter service, workflow engine, scorer and matcher."""

    def __init__(
        self,
        store: AtomicStore,
        weights: Optional[trust_scorer.ScoringWeights] = None,
        audit_hook: Optional[AuditHook] = None,
    ):
        self.store = store
        self.weights = weights or trust_scorer.ScoringWeights.from_settings()
        self.audit_hook = audit_hook or get_audit_hook()
        self.counters = CounterService(store, self.weights, self.audit_hook)
        self.workflow = StatusWorkflowEngine(store, self.weights, self.audit_hook)
        self.matcher = ProximityMatcher(store)

    @staticmethod
    def new_incident_id() -> str:
        return uuid.uuid4().hex

    def _consume_if_guest(self, identity: VoterIdentity) -> None:
        if identity.kind is VoterKind.GUEST:
            self.counters.try_consume_action(identity.id)
        elif identity.kind is not VoterKind.REGISTERED:
            raise ValidationError(f"Unknown identity kind: {identity.kind}")

    def create_incident(
        self,
        draft: IncidentDraft,
        reporter: VoterIdentity,
    ) -> Tuple[Incident, List[DuplicateCandidate]]:
        """
        Store a new incident in ``reported`` status.

        Guests spend one action. Nearby active incidents of the same type are
        returned as duplicate candidates; nothing is marked automatically.

        Raises:
            ValidationError: bad coordinates or too many media files
            LimitExceededError: guest quota exhausted
        """
        location = draft.location
        validate_coordinates(location.longitude, location.latitude)
        if len(draft.media) > settings.MAX_MEDIA_PER_INCIDENT:
            raise ValidationError(
                f"Cannot have more than {settings.MAX_MEDIA_PER_INCIDENT} media files per incident",
                code=TOO_MANY_FILES,
                details={"provided": len(draft.media)},
            )

        incident_id = self.new_incident_id()
        nearby = self.matcher.find_nearby(location, settings.DUPLICATE_RADIUS_METERS, draft.type)
        candidates = [
            DuplicateCandidate(incident=incident, distance_meters=distance)
            for incident, distance in nearby
        ]

        # Only the insert follows the spend; a failed read costs the guest nothing.
        self._consume_if_guest(reporter)

        now = utc_now()
        incident = Incident(
            id=incident_id,
            title=draft.title,
            description=draft.description,
            type=draft.type,
            severity=draft.severity,
            status=IncidentStatus.REPORTED,
            status_history=[
                StatusHistoryEntry(
                    status=IncidentStatus.REPORTED,
                    actor=reporter,
                    timestamp=now,
                    reason="Incident reported",
                )
            ],
            location=location,
            geo_cells=cells_for_point(location.longitude, location.latitude),
            media=list(draft.media),
            reporter=reporter,
            created_at=now,
            updated_at=now,
            related_incidents=[candidate.incident.id for candidate in candidates],
        )
        incident.verification_score = trust_scorer.score(incident, now, self.weights)

        try:
            committed = self.store.insert_unique(INCIDENTS, incident.id, incident.to_document())
        except DocumentExistsError:
            raise ConcurrencyConflictError(
                "Failed to generate unique incident ID, please try again",
                details={"incident_id": incident.id},
            )

        created = Incident.from_document(incident.id, committed)
        logger.info(
            f"Incident {created.id} reported by {reporter.key} "
            f"(type={created.type.value}, score={created.verification_score}, "
            f"{len(candidates)} duplicate candidate(s))"
        )
        self.audit_hook.record(
            "incident_created",
            created.id,
            reporter,
            {"duplicate_candidates": created.related_incidents},
        )
        return created, candidates

    def get_incident(self, incident_id: str) -> Incident:
        return fetch_incident(self.store, incident_id)

    def transition_status(
        self,
        incident_id: str,
        new_status: Union[IncidentStatus, str],
        actor: VoterIdentity,
        reason: Optional[str] = None,
        duplicate_of: Optional[str] = None,
        assignee_id: Optional[str] = None,
    ) -> Incident:
        assignment = None
        if assignee_id is not None:
            assignment = build_assignment(assignee_id, actor, notes=reason)
        return self.workflow.transition_status(incident_id, new_status, actor, reason, duplicate_of, assignment)

    def assign_incident(
        self,
        incident_id: str,
        assignee_id: str,
        actor: VoterIdentity,
        priority: Severity = Severity.MEDIUM,
        notes: Optional[str] = None,
    ) -> Incident:
        return self.workflow.assign_incident(incident_id, assignee_id, actor, priority, notes)

    def add_upvote(self, incident_id: str, voter: VoterIdentity) -> Incident:
        """
        Upvote an incident; guests spend one action.

        Unknown, closed and already-upvoted incidents are rejected before the
        guest action is spent. A guest who loses a same-voter race after that
        check still pays for the attempt.
        """
        current = fetch_incident(self.store, incident_id)
        if current.is_terminal:
            raise upvote_closed_error(incident_id, current.status)
        if current.has_upvote_from(voter):
            raise duplicate_upvote_error(incident_id, voter)

        self._consume_if_guest(voter)
        return self.counters.add_upvote(incident_id, voter)

    def remove_upvote(self, incident_id: str, voter: VoterIdentity) -> Incident:
        return self.counters.remove_upvote(incident_id, voter)

    def recompute_score(self, incident_id: str) -> int:
        """
        Recompute and persist the verification score.

        Writes only when the value changed (e.g. age decay kicked in).
        """
        now = utc_now()
        computed: Dict[str, int] = {}

        def mutate(document):
            incident = Incident.from_document(incident_id, document)
            new_score = trust_scorer.score(incident, now, self.weights)
            computed["score"] = new_score
            if new_score == incident.verification_score:
                return None
            return incident.model_copy(
                update={"verification_score": new_score, "updated_at": now}
            ).to_document()

        try:
            committed = self.store.update_if(INCIDENTS, incident_id, mutate)
        except DocumentNotFoundError:
            raise incident_not_found(incident_id)

        if committed is not None:
            logger.info(f"Incident {incident_id} score recomputed: {committed['verification_score']}")
            return committed["verification_score"]
        return computed["score"]

    def add_media(self, incident_id: str, attachment: MediaAttachment, actor: VoterIdentity) -> Incident:
        """
        Append a media reference and rescore in one conditional write.

        Raises:
            ValidationError: media limit reached or incident is terminal
            NotFoundError: unknown incident
        """
        rejection: Dict[str, ValidationError] = {}
        limit = settings.MAX_MEDIA_PER_INCIDENT

        def mutate(document):
            incident = Incident.from_document(incident_id, document)
            if incident.is_terminal:
                rejection["error"] = ValidationError(
                    f"Incident {incident_id} is {incident.status.value} and no longer accepts media",
                    details={"incident_id": incident_id, "status": incident.status.value},
                )
                return None
            if len(incident.media) >= limit:
                rejection["error"] = ValidationError(
                    f"Maximum media limit reached ({limit} files)",
                    code=TOO_MANY_FILES,
                    details={"incident_id": incident_id, "limit": limit},
                )
                return None
            now = utc_now()
            updated = incident.model_copy(update={"media": [*incident.media, attachment], "updated_at": now})
            updated = updated.model_copy(
                update={"verification_score": trust_scorer.score(updated, now, self.weights)}
            )
            return updated.to_document()

        try:
            committed = self.store.update_if(INCIDENTS, incident_id, mutate)
        except DocumentNotFoundError:
            raise incident_not_found(incident_id)

        if committed is None:
            raise rejection["error"]

        incident = Incident.from_document(incident_id, committed)
        logger.info(f"Media added to incident {incident_id} by {actor.key} ({len(incident.media)} file(s))")
        self.audit_hook.record("media_added", incident_id, actor, {"url": attachment.url})
        return incident

    def flag_incident(self, incident_id: str, reason: str, actor: VoterIdentity) -> Incident:
        """
        Flag an incident for moderation.

        Flagging does not change the status; a second flag replaces the first.

        Raises:
            ValidationError: empty or over-long reason
            NotFoundError: unknown incident
        """
        reason = (reason or "").strip()
        if not reason or len(reason) > MAX_REASON_LENGTH:
            raise ValidationError(
                f"Flag reason must be 1-{MAX_REASON_LENGTH} characters",
                details={"incident_id": incident_id, "length": len(reason)},
            )

        now = utc_now()
        flag = IncidentFlag(reason=reason, flagged_by=actor, flagged_at=now)

        def mutate(document):
            incident = Incident.from_document(incident_id, document)
            return incident.model_copy(update={"is_flagged": True, "flag": flag, "updated_at": now}).to_document()

        try:
            committed = self.store.update_if(INCIDENTS, incident_id, mutate)
        except DocumentNotFoundError:
            raise incident_not_found(incident_id)

        incident = Incident.from_document(incident_id, committed)
        logger.warning(f"Incident {incident_id} flagged by {actor.key}: {reason}")
        self.audit_hook.record("incident_flagged", incident_id, actor, {"reason": reason})
        return incident

    def find_nearby(
        self,
        coordinates: Coordinates,
        radius_meters: float,
        type_filter: Optional[IncidentType] = None,
    ) -> List[Tuple[Incident, float]]:
        return self.matcher.find_nearby(coordinates, radius_meters, type_filter)


# Global service instance (singleton pattern)
_incident_service = None


def get_incident_service() -> IncidentService:
    """Get or create IncidentService singleton."""
    global _incident_service
    if _incident_service is None:
        from app.store import get_store
        _incident_service = IncidentService(get_store())
    return _incident_service


def reset_incident_service() -> None:
    global _incident_service
    _incident_service = None
