"""Shared fixtures: every test gets its own in-memory store and audit trail."""

from datetime import timedelta
from typing import Optional

import pytest

from app.models.base import utc_now
from app.models.guest import Guest
from app.models.identity import VoterIdentity
from app.models.incident import GeoPoint, IncidentDraft, IncidentType, Severity
from app.services.audit_hook import AuditHook
from app.services.guest_service import GuestService
from app.services.incident_service import IncidentService
from app.services.trust_scorer import ScoringWeights
from app.store.base import GUESTS
from app.store.memory_store import MemoryAtomicStore

SF = (-122.4194, 37.7749)


@pytest.fixture
def store() -> MemoryAtomicStore:
    return MemoryAtomicStore()


@pytest.fixture
def audit_events() -> list:
    return []


@pytest.fixture
def audit_hook(audit_events) -> AuditHook:
    return AuditHook([audit_events.append])


@pytest.fixture
def weights() -> ScoringWeights:
    return ScoringWeights()


@pytest.fixture
def incident_service(store, weights, audit_hook) -> IncidentService:
    return IncidentService(store, weights, audit_hook)


@pytest.fixture
def guest_service(store, incident_service) -> GuestService:
    return GuestService(store, incident_service.counters)


@pytest.fixture
def official() -> VoterIdentity:
    return VoterIdentity.registered("official-1")


@pytest.fixture
def make_draft():
    def _make(
        longitude: float = SF[0],
        latitude: float = SF[1],
        type: IncidentType = IncidentType.ACCIDENT,
        description: str = "Two cars collided at the crossing.",
        **overrides,
    ) -> IncidentDraft:
        fields = dict(
            title="Collision at Market Street",
            description=description,
            type=type,
            severity=Severity.HIGH,
            location=GeoPoint(longitude=longitude, latitude=latitude),
        )
        fields.update(overrides)
        return IncidentDraft(**fields)

    return _make


@pytest.fixture
def make_guest(store):
    """Insert a guest document with a chosen quota state."""
    def _make(
        guest_id: str = "guest_test",
        action_count: int = 0,
        max_actions: int = 10,
        age: Optional[timedelta] = None,
        session: Optional[timedelta] = None,
    ) -> Guest:
        now = utc_now()
        guest = Guest(
            id=guest_id,
            action_count=action_count,
            max_actions=max_actions,
            created_at=now - (age or timedelta()),
            session_started_at=now - (session or timedelta()),
            last_active_at=now,
            expires_at=now + timedelta(days=30),
        )
        store.insert_unique(GUESTS, guest.id, guest.to_document())
        return guest

    return _make
