"""
Guest Service - anonymous reporter lifecycle and quota allowance.

Guests are created on first anonymous interaction. Their allowance
(max_actions) grows with session length and account age and shrinks for
heavy users, but never drops below what they have already spent.
"""

from datetime import datetime, timedelta
from typing import Dict, Optional
import logging
import uuid

from app.core.errors import ConcurrencyConflictError, ValidationError
from app.core.settings import settings
from app.models.base import utc_now
from app.models.guest import MAX_BLOCK_REASON_LENGTH, Guest
from app.services.counter_service import CounterService
from app.services.lookups import fetch_guest, guest_not_found
from app.store.base import GUESTS, AtomicStore, DocumentExistsError, DocumentNotFoundError

logger = logging.getLogger(__name__)


class GuestService:
    """Creates guests, reports their quota, spends/refreshes it, and blocks abusers."""

    # Allowance adjustments (hours of session, days since creation)
    SESSION_BONUSES = ((1, 5), (4, 10))
    AGE_BONUSES = ((7, 5), (30, 10))
    HEAVY_USE_THRESHOLD = 100
    HEAVY_USE_PENALTY = 5
    HEAVY_USE_FLOOR = 5

    def __init__(self, store: AtomicStore, counters: Optional[CounterService] = None):
        self.store = store
        self.counters = counters or CounterService(store)

    @staticmethod
    def new_guest_id() -> str:
        return f"guest_{uuid.uuid4().hex}"

    def create_guest(self) -> Guest:
        now = utc_now()
        guest = Guest(
            id=self.new_guest_id(),
            action_count=0,
            max_actions=settings.GUEST_BASE_MAX_ACTIONS,
            created_at=now,
            session_started_at=now,
            last_active_at=now,
            expires_at=now + timedelta(days=settings.GUEST_TTL_DAYS),
        )
        try:
            self.store.insert_unique(GUESTS, guest.id, guest.to_document())
        except DocumentExistsError:
            raise ConcurrencyConflictError(
                "Failed to generate unique guest ID, please try again",
                details={"guest_id": guest.id},
            )
        logger.info(f"Guest {guest.id} created (max_actions={guest.max_actions})")
        return guest

    def get_guest(self, guest_id: str) -> Guest:
        return fetch_guest(self.store, guest_id)

    def try_consume_guest_action(self, guest_id: str) -> Guest:
        return self.counters.try_consume_action(guest_id)

    @classmethod
    def compute_max_actions(cls, guest: Guest, now: datetime) -> int:
        """
        Allowance for a guest right now.

        Base limit, plus bonuses for long sessions and older guests, minus a
        penalty for heavy use; capped, and never below ``action_count``.
        """
        allowance = settings.GUEST_BASE_MAX_ACTIONS

        session_hours = (now - guest.session_started_at).total_seconds() / 3600
        for hours, bonus in cls.SESSION_BONUSES:
            if session_hours > hours:
                allowance += bonus

        age_days = (now - guest.created_at).days
        for days, bonus in cls.AGE_BONUSES:
            if age_days > days:
                allowance += bonus

        if guest.action_count > cls.HEAVY_USE_THRESHOLD:
            allowance = max(cls.HEAVY_USE_FLOOR, allowance - cls.HEAVY_USE_PENALTY)

        allowance = min(allowance, settings.GUEST_MAX_ACTIONS_CAP)
        return max(allowance, guest.action_count, 1)

    def refresh_guest_allowance(self, guest_id: str) -> Guest:
        """Recompute max_actions in one conditional write; no-op if unchanged."""
        now = utc_now()
        seen: Dict[str, Guest] = {}

        def mutate(document):
            guest = Guest.from_document(guest_id, document)
            seen["guest"] = guest
            allowance = self.compute_max_actions(guest, now)
            if allowance == guest.max_actions:
                return None
            return guest.model_copy(update={"max_actions": allowance}).to_document()

        try:
            committed = self.store.update_if(GUESTS, guest_id, mutate)
        except DocumentNotFoundError:
            raise guest_not_found(guest_id)

        if committed is None:
            return seen["guest"]

        guest = Guest.from_document(guest_id, committed)
        logger.info(f"Guest {guest_id} allowance set to {guest.max_actions}")
        return guest

    def block_guest(self, guest_id: str, reason: str, duration_hours: int = 24) -> Guest:
        """
        Block a guest from spending actions for ``duration_hours``.

        Blocking an already blocked guest replaces the reason and expiry.

        Raises:
            ValidationError: empty or over-long reason, non-positive duration
            NotFoundError: unknown guest
        """
        reason = (reason or "").strip()
        if not reason or len(reason) > MAX_BLOCK_REASON_LENGTH:
            raise ValidationError(
                f"Block reason must be 1-{MAX_BLOCK_REASON_LENGTH} characters",
                details={"guest_id": guest_id, "length": len(reason)},
            )
        if duration_hours <= 0:
            raise ValidationError(
                "Block duration must be positive",
                details={"guest_id": guest_id, "duration_hours": duration_hours},
            )

        now = utc_now()

        def mutate(document):
            guest = Guest.from_document(guest_id, document)
            return guest.model_copy(update={
                "is_blocked": True,
                "block_reason": reason,
                "blocked_at": now,
                "block_expires_at": now + timedelta(hours=duration_hours),
            }).to_document()

        try:
            committed = self.store.update_if(GUESTS, guest_id, mutate)
        except DocumentNotFoundError:
            raise guest_not_found(guest_id)

        guest = Guest.from_document(guest_id, committed)
        logger.warning(f"Guest {guest_id} blocked until {guest.block_expires_at.isoformat()}: {reason}")
        return guest

    def unblock_guest(self, guest_id: str) -> Guest:
        """Lift a block; no-op for a guest that is not blocked."""
        seen: Dict[str, Guest] = {}

        def mutate(document):
            guest = Guest.from_document(guest_id, document)
            seen["guest"] = guest
            if not guest.is_blocked:
                return None
            return guest.model_copy(update={
                "is_blocked": False,
                "block_reason": None,
                "blocked_at": None,
                "block_expires_at": None,
            }).to_document()

        try:
            committed = self.store.update_if(GUESTS, guest_id, mutate)
        except DocumentNotFoundError:
            raise guest_not_found(guest_id)

        if committed is None:
            return seen["guest"]

        logger.info(f"Guest {guest_id} unblocked")
        return Guest.from_document(guest_id, committed)


# Global service instance (singleton pattern)
_guest_service = None


def get_guest_service() -> GuestService:
    """Get or create GuestService singleton."""
    global _guest_service
    if _guest_service is None:
        from app.store import get_store
        _guest_service = GuestService(get_store())
    return _guest_service


def reset_guest_service() -> None:
    global _guest_service
    _guest_service = None
