"""
Voter identity: who reported, upvoted or spent a guest action.

A tagged variant of registered user or guest. Equality is structural
(kind + id), so the same id under different kinds is two different voters.
"""

from enum import Enum

from pydantic import BaseModel, Field


class VoterKind(str, Enum):
    REGISTERED = "registered"
    GUEST = "guest"


class VoterIdentity(BaseModel):
    """Resolved caller identity supplied by the auth layer."""
    kind: VoterKind
    id: str = Field(..., min_length=1, max_length=128)

    class Config:
        frozen = True

    @classmethod
    def registered(cls, user_id: str) -> "VoterIdentity":
        return cls(kind=VoterKind.REGISTERED, id=user_id)

    @classmethod
    def guest(cls, guest_id: str) -> "VoterIdentity":
        return cls(kind=VoterKind.GUEST, id=guest_id)

    @property
    def is_registered(self) -> bool:
        if self.kind is VoterKind.REGISTERED:
            return True
        if self.kind is VoterKind.GUEST:
            return False
        raise ValueError(f"Unknown voter kind: {self.kind}")

    @property
    def key(self) -> str:
        """Stable storage key, e.g. ``guest:abc123``."""
        return f"{self.kind.value}:{self.id}"

    def __str__(self) -> str:
        return self.key
