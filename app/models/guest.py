"""
Guest models for anonymous reporters.
"""

from pydantic import BaseModel, Field
from datetime import datetime
from typing import Any, Dict, Optional

from app.models.base import utc_now

MAX_BLOCK_REASON_LENGTH = 200


class Guest(BaseModel):
    """
    Anonymous actor with a bounded action quota.

    ``action_count`` never exceeds ``max_actions``; the quota is consumed only
    through the store's conditional increment. A blocked guest cannot spend
    actions until unblocked or until ``block_expires_at`` passes.
    """
    id: str = Field(..., description="Guest identifier (guest_<hex>)")
    action_count: int = Field(default=0, ge=0)
    max_actions: int = Field(default=10, gt=0)
    created_at: datetime = Field(default_factory=utc_now)
    session_started_at: datetime = Field(default_factory=utc_now)
    last_active_at: datetime = Field(default_factory=utc_now)
    expires_at: datetime
    is_blocked: bool = False
    block_reason: Optional[str] = Field(None, max_length=MAX_BLOCK_REASON_LENGTH)
    blocked_at: Optional[datetime] = None
    block_expires_at: Optional[datetime] = None

    @property
    def remaining_actions(self) -> int:
        return max(0, self.max_actions - self.action_count)

    def is_blocked_at(self, now: datetime) -> bool:
        return self.is_blocked and (self.block_expires_at is None or self.block_expires_at > now)

    @property
    def can_perform_action(self) -> bool:
        return self.action_count < self.max_actions and not self.is_blocked_at(utc_now())

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude={"id"})

    @classmethod
    def from_document(cls, doc_id: str, data: Dict[str, Any]) -> "Guest":
        return cls.model_validate({**data, "id": doc_id})


class BlockRequest(BaseModel):
    """Block a guest for a number of hours."""
    reason: str = Field(..., min_length=1, max_length=MAX_BLOCK_REASON_LENGTH)
    duration_hours: int = Field(default=24, gt=0, le=24 * 365)


class GuestStatus(BaseModel):
    """Guest quota view returned to callers."""
    guest_id: str
    action_count: int
    max_actions: int
    remaining_actions: int
    can_perform_action: bool
    is_blocked: bool = False
    block_expires_at: Optional[datetime] = None
    expires_at: datetime

    @classmethod
    def from_guest(cls, guest: Guest) -> "GuestStatus":
        return cls(
            guest_id=guest.id,
            action_count=guest.action_count,
            max_actions=guest.max_actions,
            remaining_actions=guest.remaining_actions,
            can_perform_action=guest.can_perform_action,
            is_blocked=guest.is_blocked_at(utc_now()),
            block_expires_at=guest.block_expires_at if guest.is_blocked else None,
            expires_at=guest.expires_at,
        )
