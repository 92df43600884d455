"""
Counter Service - race-free guest quotas and per-voter upvote uniqueness.

DESIGN PRINCIPLES (CRITICAL):
- The service runs on many instances; there is no shared memory to lock
- Every check-and-change is ONE conditional write through the AtomicStore
- Never read a counter, compare it, then write it back
- upvote_count and verification_score are written together with upvotes,
  so upvote_count == len(upvotes) in every committed document
"""

from typing import Dict, Optional
import logging

from app.core.errors import (
    GUEST_BLOCKED,
    REGISTER_TO_CONTINUE,
    UPVOTE_NOT_FOUND,
    DuplicateVoteError,
    LimitExceededError,
    NotFoundError,
    ValidationError,
)
from app.models.base import utc_now
from app.models.guest import Guest
from app.models.identity import VoterIdentity
from app.models.incident import Incident, IncidentStatus
from app.services import trust_scorer
from app.services.audit_hook import AuditHook, get_audit_hook
from app.services.lookups import guest_not_found, incident_not_found
from app.store.base import GUESTS, INCIDENTS, AtomicStore, DocumentNotFoundError

logger = logging.getLogger(__name__)


def upvote_closed_error(incident_id: str, status: IncidentStatus) -> ValidationError:
    return ValidationError(
        f"Incident {incident_id} is {status.value} and no longer accepts upvotes",
        details={"incident_id": incident_id, "status": status.value},
    )


def duplicate_upvote_error(incident_id: str, voter: VoterIdentity) -> DuplicateVoteError:
    return DuplicateVoteError(
        "You have already upvoted this incident",
        details={"incident_id": incident_id, "voter": voter.key},
        suggestion="Remove your existing upvote before voting again.",
    )


class CounterService:
    """Guest action quota and upvote set, both guarded by conditional writes."""

    def __init__(
        self,
        store: AtomicStore,
        weights: Optional[trust_scorer.ScoringWeights] = None,
        audit_hook: Optional[AuditHook] = None,
    ):
        self.store = store
        self.weights = weights or trust_scorer.ScoringWeights.from_settings()
        self.audit_hook = audit_hook or get_audit_hook()

    # ------------------------------------------------------------------
    # Guest action quota
    # ------------------------------------------------------------------

    def try_consume_action(self, guest_id: str) -> Guest:
        """
        Spend one guest action.

        With k actions left and N >= k concurrent callers, exactly k succeed.
        The block check runs inside the same conditional increment, so a guest
        blocked mid-flight cannot spend one more action.

        Raises:
            LimitExceededError: quota exhausted (registration suggested), or
                guest is blocked (GUEST_BLOCKED)
            NotFoundError: unknown guest
        """
        now = utc_now()
        blocked: Dict[str, Guest] = {}

        def not_blocked(document) -> bool:
            guest = Guest.from_document(guest_id, document)
            if guest.is_blocked_at(now):
                blocked["guest"] = guest
                return False
            blocked.pop("guest", None)
            return True

        try:
            committed = self.store.increment_if_below(
                GUESTS,
                guest_id,
                counter_field="action_count",
                ceiling_field="max_actions",
                changes={"last_active_at": now.isoformat()},
                precondition=not_blocked,
            )
        except DocumentNotFoundError:
            raise guest_not_found(guest_id)

        if committed is None:
            if "guest" in blocked:
                guest = blocked["guest"]
                logger.warning(f"Blocked guest {guest_id} attempted an action")
                expires = guest.block_expires_at.isoformat() if guest.block_expires_at else None
                raise LimitExceededError(
                    "Guest is blocked and cannot perform actions",
                    code=GUEST_BLOCKED,
                    details={"guest_id": guest_id, "reason": guest.block_reason, "block_expires_at": expires},
                )
            logger.warning(f"Guest {guest_id} hit the action limit")
            raise LimitExceededError(
                "Guest has reached maximum action limit. Please register to continue.",
                details={"guest_id": guest_id, "requires_registration": True},
                suggestion=REGISTER_TO_CONTINUE,
            )

        guest = Guest.from_document(guest_id, committed)
        logger.info(f"Guest {guest_id} action recorded ({guest.action_count}/{guest.max_actions})")
        return guest

    # ------------------------------------------------------------------
    # Upvotes
    # ------------------------------------------------------------------

    def _rescored(self, incident: Incident, upvotes) -> Incident:
        now = utc_now()
        updated = incident.model_copy(update={
            "upvotes": upvotes,
            "upvote_count": len(upvotes),
            "updated_at": now,
        })
        return updated.model_copy(
            update={"verification_score": trust_scorer.score(updated, now, self.weights)}
        )

    def add_upvote(self, incident_id: str, voter: VoterIdentity) -> Incident:
        """
        Insert ``voter`` into the incident's upvote set if absent.

        Raises:
            DuplicateVoteError: voter already upvoted (also for the loser of a
                same-voter race)
            ValidationError: incident is in a terminal state
            NotFoundError: unknown incident
        """
        closed_status = []

        def mutate(document):
            incident = Incident.from_document(incident_id, document)
            if incident.is_terminal:
                closed_status.append(incident.status)
                return None
            if incident.has_upvote_from(voter):
                return None
            return self._rescored(incident, [*incident.upvotes, voter]).to_document()

        try:
            committed = self.store.update_if(INCIDENTS, incident_id, mutate)
        except DocumentNotFoundError:
            raise incident_not_found(incident_id)

        if committed is None:
            if closed_status:
                raise upvote_closed_error(incident_id, closed_status[-1])
            logger.warning(f"Duplicate upvote rejected: {voter.key} on incident {incident_id}")
            raise duplicate_upvote_error(incident_id, voter)

        incident = Incident.from_document(incident_id, committed)
        logger.info(f"Upvote added to incident {incident_id} by {voter.key} (count={incident.upvote_count})")
        self.audit_hook.record("upvote_added", incident_id, voter, {"upvote_count": incident.upvote_count})
        return incident

    def remove_upvote(self, incident_id: str, voter: VoterIdentity) -> Incident:
        """
        Delete ``voter`` from the incident's upvote set if present.

        Raises:
            NotFoundError: unknown incident, or voter never upvoted
        """

        def mutate(document):
            incident = Incident.from_document(incident_id, document)
            if not incident.has_upvote_from(voter):
                return None
            remaining = [existing for existing in incident.upvotes if existing != voter]
            return self._rescored(incident, remaining).to_document()

        try:
            committed = self.store.update_if(INCIDENTS, incident_id, mutate)
        except DocumentNotFoundError:
            raise incident_not_found(incident_id)

        if committed is None:
            raise NotFoundError(
                "Upvote not found",
                code=UPVOTE_NOT_FOUND,
                details={"incident_id": incident_id, "voter": voter.key},
            )

        incident = Incident.from_document(incident_id, committed)
        logger.info(f"Upvote removed from incident {incident_id} by {voter.key} (count={incident.upvote_count})")
        self.audit_hook.record("upvote_removed", incident_id, voter, {"upvote_count": incident.upvote_count})
        return incident
