"""
Status Workflow Engine - strict incident state machine.

DESIGN PRINCIPLES:
- Only transitions in the adjacency map are allowed
- Terminal states accept no transitions
- History is append-only; prior entries are never edited
- The write carries a current-status precondition, so concurrent transitions
  on one incident serialize in commit order and the loser gets STALE_STATE
"""

from datetime import datetime
from typing import Any, Dict, FrozenSet, List, Optional, Union
import logging

from pydantic import ValidationError as PydanticValidationError

from app.core.errors import STALE_STATE, NotFoundError, TransitionError, ValidationError
from app.core.settings import settings
from app.models.base import utc_now
from app.models.identity import VoterIdentity
from app.models.incident import (
    MAX_REASON_LENGTH,
    TERMINAL_STATUSES,
    Assignment,
    AssignmentStatus,
    Incident,
    IncidentStatus,
    Severity,
    StatusHistoryEntry,
)
from app.services import trust_scorer
from app.services.audit_hook import AuditHook, get_audit_hook
from app.services.lookups import fetch_incident, incident_not_found
from app.store.base import INCIDENTS, AtomicStore, DocumentNotFoundError

logger = logging.getLogger(__name__)


def build_assignment(
    assignee_id: str,
    actor: VoterIdentity,
    priority: Severity = Severity.MEDIUM,
    notes: Optional[str] = None,
) -> Assignment:
    """
    Raises:
        ValidationError: empty or over-long assignee id or notes
    """
    try:
        return Assignment(assignee_id=assignee_id, assigned_by=actor, priority=priority, notes=notes)
    except PydanticValidationError as e:
        raise ValidationError(
            "Invalid assignment",
            details={"errors": [err["msg"] for err in e.errors()]},
        )


def _configured_score_statuses() -> FrozenSet[IncidentStatus]:
    return frozenset(
        IncidentStatus(part.strip())
        for part in settings.SCORE_AFFECTING_STATUSES.split(",")
        if part.strip()
    )


class StatusWorkflowEngine:
    """
    State machine for incident status transitions.

    Rules:
    - reported    -> verified | duplicate | false_report | cancelled
    - verified    -> assigned | duplicate | false_report | cancelled
    - assigned    -> in_progress | cancelled
    - in_progress -> resolved | cancelled
    - resolved    -> closed
    - closed, duplicate, false_report, cancelled are terminal
    - assigned requires an assignment; assigned and in_progress accept reassignment
    """

    ALLOWED_TRANSITIONS: Dict[IncidentStatus, List[IncidentStatus]] = {
        IncidentStatus.REPORTED: [
            IncidentStatus.VERIFIED,
            IncidentStatus.DUPLICATE,
            IncidentStatus.FALSE_REPORT,
            IncidentStatus.CANCELLED,
        ],
        IncidentStatus.VERIFIED: [
            IncidentStatus.ASSIGNED,
            IncidentStatus.DUPLICATE,
            IncidentStatus.FALSE_REPORT,
            IncidentStatus.CANCELLED,
        ],
        IncidentStatus.ASSIGNED: [IncidentStatus.IN_PROGRESS, IncidentStatus.CANCELLED],
        IncidentStatus.IN_PROGRESS: [IncidentStatus.RESOLVED, IncidentStatus.CANCELLED],
        IncidentStatus.RESOLVED: [IncidentStatus.CLOSED],
        IncidentStatus.CLOSED: [],
        IncidentStatus.DUPLICATE: [],
        IncidentStatus.FALSE_REPORT: [],
        IncidentStatus.CANCELLED: [],
    }

    # Timestamp field stamped when entering a status
    STATUS_TIMESTAMP_FIELDS: Dict[IncidentStatus, str] = {
        IncidentStatus.VERIFIED: "verified_at",
        IncidentStatus.ASSIGNED: "assigned_at",
        IncidentStatus.RESOLVED: "resolved_at",
        IncidentStatus.CLOSED: "closed_at",
    }

    # Statuses where a new assignment replaces the current one without a transition
    REASSIGNABLE_STATUSES = frozenset({IncidentStatus.ASSIGNED, IncidentStatus.IN_PROGRESS})

    def __init__(
        self,
        store: AtomicStore,
        weights: Optional[trust_scorer.ScoringWeights] = None,
        audit_hook: Optional[AuditHook] = None,
        score_statuses: Optional[FrozenSet[IncidentStatus]] = None,
    ):
        self.store = store
        self.weights = weights or trust_scorer.ScoringWeights.from_settings()
        self.audit_hook = audit_hook or get_audit_hook()
        self.score_statuses = score_statuses if score_statuses is not None else _configured_score_statuses()

    @classmethod
    def is_valid_transition(cls, from_status: str, to_status: str) -> bool:
        """
        Check if a status transition is allowed.

        Same-status "transitions" are not allowed; unknown values never are.
        """
        try:
            from_enum = IncidentStatus(from_status)
            to_enum = IncidentStatus(to_status)
        except ValueError:
            return False
        return to_enum in cls.ALLOWED_TRANSITIONS.get(from_enum, [])

    @classmethod
    def get_allowed_transitions(cls, current_status: str) -> List[str]:
        try:
            current_enum = IncidentStatus(current_status)
        except ValueError:
            return []
        return [status.value for status in cls.ALLOWED_TRANSITIONS.get(current_enum, [])]

    @classmethod
    def validate_transition(cls, current_status: IncidentStatus, new_status: IncidentStatus) -> None:
        """
        Raises:
            TransitionError: terminal current state or non-adjacent target
        """
        if current_status in TERMINAL_STATUSES:
            raise TransitionError(
                f"Incident is already {current_status.value} and cannot change status",
                details={"from": current_status.value, "to": new_status.value, "allowed": []},
            )
        if not cls.is_valid_transition(current_status.value, new_status.value):
            allowed = cls.get_allowed_transitions(current_status.value)
            raise TransitionError(
                f"Invalid status transition: {current_status.value} → {new_status.value}. "
                f"Allowed transitions from {current_status.value}: {allowed}",
                details={"from": current_status.value, "to": new_status.value, "allowed": allowed},
            )

    def affects_score(self, from_status: IncidentStatus, to_status: IncidentStatus) -> bool:
        return from_status in self.score_statuses or to_status in self.score_statuses

    @staticmethod
    def _with_assignment(incident: Incident, assignment: Assignment) -> Dict[str, Any]:
        """Append ``assignment``; a still-pending predecessor becomes REASSIGNED."""
        previous = [
            entry.model_copy(update={"status": AssignmentStatus.REASSIGNED})
            if entry.status is AssignmentStatus.PENDING else entry
            for entry in incident.assignments
        ]
        return {
            "assignments": [*previous, assignment],
            "current_assignee": assignment.assignee_id,
        }

    def apply_transition(
        self,
        incident: Incident,
        new_status: IncidentStatus,
        actor: VoterIdentity,
        reason: Optional[str],
        now: datetime,
        duplicate_of: Optional[str] = None,
        assignment: Optional[Assignment] = None,
    ) -> Incident:
        """Pure: the incident as it looks after the transition."""
        entry = StatusHistoryEntry(status=new_status, actor=actor, timestamp=now, reason=reason)
        changes = {
            "status": new_status,
            "status_history": [*incident.status_history, entry],
            "updated_at": now,
        }

        timestamp_field = self.STATUS_TIMESTAMP_FIELDS.get(new_status)
        if timestamp_field:
            changes[timestamp_field] = now
        if new_status is IncidentStatus.RESOLVED:
            changes["resolution_minutes"] = int((now - incident.created_at).total_seconds() // 60)
        if duplicate_of:
            changes["duplicate_of"] = duplicate_of
            if duplicate_of not in incident.related_incidents:
                changes["related_incidents"] = [*incident.related_incidents, duplicate_of]
        if assignment is not None:
            changes.update(self._with_assignment(incident, assignment.model_copy(update={"assigned_at": now})))

        updated = incident.model_copy(update=changes)
        if self.affects_score(incident.status, new_status):
            updated = updated.model_copy(
                update={"verification_score": trust_scorer.score(updated, now, self.weights)}
            )
        return updated

    def _validate_duplicate_target(self, incident_id: str, new_status: IncidentStatus, duplicate_of: str) -> None:
        """
        Check the ``duplicate_of`` target before the write.

        The target is read outside the incident's conditional write; only the
        incident's own status is re-checked at commit. Two officials marking
        A as a duplicate of B and B as a duplicate of A at the same moment can
        therefore both commit, leaving a direct cycle.
        """
        if new_status is not IncidentStatus.DUPLICATE:
            raise ValidationError(
                "duplicate_of can only be set when marking an incident as duplicate",
                details={"status": new_status.value},
            )
        if duplicate_of == incident_id:
            raise ValidationError("An incident cannot be a duplicate of itself", details={"duplicate_of": duplicate_of})
        try:
            target = fetch_incident(self.store, duplicate_of)
        except NotFoundError:
            raise ValidationError(
                f"Original incident {duplicate_of} not found",
                details={"duplicate_of": duplicate_of},
            )
        if target.duplicate_of == incident_id:
            raise ValidationError(
                f"Incident {duplicate_of} is already marked as a duplicate of {incident_id}",
                details={"duplicate_of": duplicate_of},
            )

    @staticmethod
    def _validate_reason(reason: Optional[str]) -> None:
        if reason is not None and len(reason) > MAX_REASON_LENGTH:
            raise ValidationError(
                f"Reason cannot exceed {MAX_REASON_LENGTH} characters",
                details={"length": len(reason), "max_length": MAX_REASON_LENGTH},
            )

    def transition_status(
        self,
        incident_id: str,
        new_status: Union[IncidentStatus, str],
        actor: VoterIdentity,
        reason: Optional[str] = None,
        duplicate_of: Optional[str] = None,
        assignment: Optional[Assignment] = None,
    ) -> Incident:
        """
        Move an incident to ``new_status``.

        Moving to ``assigned`` requires an ``assignment``, which is recorded in
        the same conditional write. The ``duplicate_of`` cycle check is not part
        of that write (see ``_validate_duplicate_target``).

        Returns:
            The committed incident

        Raises:
            TransitionError: illegal move, terminal state, or lost a race (STALE_STATE)
            NotFoundError: unknown incident
            ValidationError: unknown status, over-long reason, bad duplicate_of,
                or a missing/unexpected assignment
        """
        try:
            new_status = IncidentStatus(new_status)
        except ValueError:
            raise ValidationError(f"Unknown status: {new_status}", details={"status": str(new_status)})
        self._validate_reason(reason)

        current = fetch_incident(self.store, incident_id)
        observed = current.status
        self.validate_transition(observed, new_status)
        if new_status is IncidentStatus.ASSIGNED and assignment is None:
            raise ValidationError(
                "An assignee is required when assigning an incident",
                details={"status": new_status.value},
            )
        if assignment is not None and new_status is not IncidentStatus.ASSIGNED:
            raise ValidationError(
                "An assignee can only be given when assigning an incident",
                details={"status": new_status.value},
            )
        if duplicate_of:
            self._validate_duplicate_target(incident_id, new_status, duplicate_of)

        now = utc_now()

        def mutate(document):
            incident = Incident.from_document(incident_id, document)
            if incident.status != observed:
                return None
            return self.apply_transition(
                incident, new_status, actor, reason, now, duplicate_of, assignment
            ).to_document()

        committed = self._commit_if_unchanged(incident_id, observed, new_status, mutate)

        incident = Incident.from_document(incident_id, committed)
        logger.info(f"Incident {incident_id}: {observed.value} → {new_status.value} by {actor.key}")
        details = {"from": observed.value, "to": new_status.value, "reason": reason}
        if assignment is not None:
            details["assignee_id"] = assignment.assignee_id
        self.audit_hook.record("status_transition", incident_id, actor, details)
        return incident

    def _commit_if_unchanged(self, incident_id: str, observed: IncidentStatus, target: IncidentStatus, mutate):
        try:
            committed = self.store.update_if(INCIDENTS, incident_id, mutate)
        except DocumentNotFoundError:
            raise incident_not_found(incident_id)

        if committed is None:
            logger.warning(
                f"Stale transition on incident {incident_id}: expected {observed.value}, lost to a concurrent update"
            )
            raise TransitionError(
                f"Incident {incident_id} changed status while this request was in flight; reload and retry",
                code=STALE_STATE,
                details={"expected": observed.value, "to": target.value},
            )
        return committed

    def assign_incident(
        self,
        incident_id: str,
        assignee_id: str,
        actor: VoterIdentity,
        priority: Severity = Severity.MEDIUM,
        notes: Optional[str] = None,
    ) -> Incident:
        """
        Assign a responder.

        A verified incident moves to ``assigned`` with the assignment recorded
        in the same write. An assigned or in-progress incident keeps its
        status and gets a reassignment.

        Raises:
            TransitionError: incident is in any other status, or lost a race (STALE_STATE)
            NotFoundError: unknown incident
            ValidationError: bad assignee or notes
        """
        assignment = build_assignment(assignee_id, actor, priority, notes)

        current = fetch_incident(self.store, incident_id)
        observed = current.status
        if observed is IncidentStatus.VERIFIED:
            return self.transition_status(
                incident_id, IncidentStatus.ASSIGNED, actor, "Incident assigned", assignment=assignment
            )
        if observed not in self.REASSIGNABLE_STATUSES:
            raise TransitionError(
                f"Incident is {observed.value} and cannot be assigned",
                details={"from": observed.value, "to": IncidentStatus.ASSIGNED.value},
            )

        now = utc_now()
        stamped = assignment.model_copy(update={"assigned_at": now})

        def mutate(document):
            incident = Incident.from_document(incident_id, document)
            if incident.status != observed:
                return None
            changes = self._with_assignment(incident, stamped)
            changes["updated_at"] = now
            return incident.model_copy(update=changes).to_document()

        committed = self._commit_if_unchanged(incident_id, observed, observed, mutate)

        incident = Incident.from_document(incident_id, committed)
        logger.info(f"Incident {incident_id} reassigned to {assignee_id} by {actor.key}")
        self.audit_hook.record(
            "incident_reassigned",
            incident_id,
            actor,
            {"assignee_id": assignee_id, "priority": priority.value, "status": observed.value},
        )
        return incident
