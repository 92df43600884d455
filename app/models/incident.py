"""
Pydantic models for incidents.
These models handle validation for incident submission, storage and responses.
"""

from pydantic import BaseModel, Field
from datetime import datetime
from typing import Any, Dict, List, Optional
from enum import Enum

from app.models.base import utc_now
from app.models.identity import VoterIdentity


class IncidentType(str, Enum):
    ACCIDENT = "accident"
    FIRE = "fire"
    MEDICAL_EMERGENCY = "medical_emergency"
    CRIME = "crime"
    NATURAL_DISASTER = "natural_disaster"
    INFRASTRUCTURE_FAILURE = "infrastructure_failure"
    PUBLIC_SAFETY = "public_safety"
    ENVIRONMENTAL = "environmental"
    OTHER = "other"


class IncidentStatus(str, Enum):
    """
    Incident lifecycle states.

    REPORTED is the initial state. CLOSED, DUPLICATE, FALSE_REPORT and
    CANCELLED are terminal.
    """
    REPORTED = "reported"
    VERIFIED = "verified"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    CLOSED = "closed"
    DUPLICATE = "duplicate"
    FALSE_REPORT = "false_report"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({
    IncidentStatus.CLOSED,
    IncidentStatus.DUPLICATE,
    IncidentStatus.FALSE_REPORT,
    IncidentStatus.CANCELLED,
})

ACTIVE_STATUSES = frozenset(s for s in IncidentStatus if s not in TERMINAL_STATUSES)

MAX_REASON_LENGTH = 500
MAX_NOTES_LENGTH = 1000


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class MediaType(str, Enum):
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    DOCUMENT = "document"


class GeoPoint(BaseModel):
    """WGS84 point. Out-of-range values are rejected, never wrapped."""
    longitude: float = Field(..., ge=-180, le=180)
    latitude: float = Field(..., ge=-90, le=90)


class MediaAttachment(BaseModel):
    """Reference to an already-stored media file."""
    url: str = Field(..., min_length=1, max_length=2048)
    media_type: MediaType = MediaType.IMAGE
    uploaded_at: datetime = Field(default_factory=utc_now)


class StatusHistoryEntry(BaseModel):
    """One committed status change. Entries are never edited after append."""
    status: IncidentStatus
    actor: VoterIdentity
    timestamp: datetime
    reason: Optional[str] = Field(None, max_length=MAX_REASON_LENGTH)


class AssignmentStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    COMPLETED = "completed"
    REASSIGNED = "reassigned"


class Assignment(BaseModel):
    """
    Responder assignment. Appended, never removed; a reassignment marks the
    previous pending entry as REASSIGNED.
    """
    assignee_id: str = Field(..., min_length=1, max_length=128, description="Registered responder id")
    assigned_by: VoterIdentity
    assigned_at: datetime = Field(default_factory=utc_now)
    status: AssignmentStatus = AssignmentStatus.PENDING
    priority: Severity = Severity.MEDIUM
    notes: Optional[str] = Field(None, max_length=MAX_NOTES_LENGTH)


class IncidentFlag(BaseModel):
    """Moderation flag; a newer flag replaces the previous one."""
    reason: str = Field(..., min_length=1, max_length=MAX_REASON_LENGTH)
    flagged_by: VoterIdentity
    flagged_at: datetime = Field(default_factory=utc_now)


class IncidentDraft(BaseModel):
    """
    Incident creation payload (incoming POST request).
    Shape checks happen here; lifecycle rules live in the services.
    """
    title: str = Field(..., min_length=5, max_length=200)
    description: str = Field(..., min_length=10, max_length=2000)
    type: IncidentType
    severity: Severity = Severity.MEDIUM
    location: GeoPoint
    media: List[MediaAttachment] = Field(default_factory=list)

    class Config:
        json_schema_extra = {
            "example": {
                "title": "Two-car collision at Market Street",
                "description": "Two cars collided at the intersection, one driver appears injured.",
                "type": "accident",
                "severity": "high",
                "location": {"longitude": -122.4194, "latitude": 37.7749},
                "media": [{"url": "https://example.com/photo.jpg", "media_type": "image"}],
            }
        }
        extra = "ignore"


class Incident(BaseModel):
    """
    Stored incident document.

    ``upvote_count`` always equals ``len(upvotes)``; both are written in the
    same conditional update. ``version`` increases with every committed write.
    """
    id: str
    title: str
    description: str
    type: IncidentType
    severity: Severity = Severity.MEDIUM
    status: IncidentStatus = IncidentStatus.REPORTED
    status_history: List[StatusHistoryEntry] = Field(default_factory=list)
    location: GeoPoint
    geo_cells: Dict[str, str] = Field(default_factory=dict, description="H3 cell per resolution key")
    media: List[MediaAttachment] = Field(default_factory=list)
    upvotes: List[VoterIdentity] = Field(default_factory=list)
    upvote_count: int = Field(default=0, ge=0)
    verification_score: int = Field(default=0, ge=0, le=100)
    reporter: VoterIdentity
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    verified_at: Optional[datetime] = None
    assigned_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    resolution_minutes: Optional[int] = None
    duplicate_of: Optional[str] = None
    related_incidents: List[str] = Field(default_factory=list)
    assignments: List[Assignment] = Field(default_factory=list)
    current_assignee: Optional[str] = None
    is_flagged: bool = False
    flag: Optional[IncidentFlag] = None
    version: int = Field(default=1, ge=1)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def has_upvote_from(self, voter: VoterIdentity) -> bool:
        return voter in self.upvotes

    def to_document(self) -> Dict[str, Any]:
        """Storage representation (id is the document key, not a field)."""
        return self.model_dump(mode="json", exclude={"id"})

    @classmethod
    def from_document(cls, doc_id: str, data: Dict[str, Any]) -> "Incident":
        return cls.model_validate({**data, "id": doc_id})


class DuplicateCandidate(BaseModel):
    """A nearby active incident surfaced as a possible duplicate."""
    incident: Incident
    distance_meters: float


class IncidentCreated(BaseModel):
    """Response for incident creation."""
    incident: Incident
    duplicate_candidates: List[DuplicateCandidate] = Field(default_factory=list)


class TransitionRequest(BaseModel):
    """Status change request from an official."""
    status: IncidentStatus
    reason: Optional[str] = Field(None, max_length=MAX_REASON_LENGTH)
    duplicate_of: Optional[str] = Field(None, description="Original incident id when marking a duplicate")
    assignee_id: Optional[str] = Field(None, max_length=128, description="Responder id, required when moving to assigned")


class AssignRequest(BaseModel):
    """Assign or reassign a responder."""
    assignee_id: str = Field(..., min_length=1, max_length=128)
    priority: Severity = Severity.MEDIUM
    notes: Optional[str] = Field(None, max_length=MAX_NOTES_LENGTH)


class FlagRequest(BaseModel):
    """Moderation flag request."""
    reason: str = Field(..., min_length=1, max_length=MAX_REASON_LENGTH)
