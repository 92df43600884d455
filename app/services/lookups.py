"""
Document lookups shared by the services.

Reads are idempotent, so infrastructure failures here are retried with
backoff before surfacing.
"""

from app.core.errors import GUEST_NOT_FOUND, INCIDENT_NOT_FOUND, NotFoundError
from app.models.guest import Guest
from app.models.incident import Incident
from app.store.base import GUESTS, INCIDENTS, AtomicStore, retried_read


def incident_not_found(incident_id: str) -> NotFoundError:
    return NotFoundError(
        f"Incident {incident_id} not found",
        code=INCIDENT_NOT_FOUND,
        details={"incident_id": incident_id},
    )


def guest_not_found(guest_id: str) -> NotFoundError:
    return NotFoundError(
        f"Guest {guest_id} not found",
        code=GUEST_NOT_FOUND,
        details={"guest_id": guest_id},
    )


def fetch_incident(store: AtomicStore, incident_id: str) -> Incident:
    data = retried_read(store.get, INCIDENTS, incident_id)
    if data is None:
        raise incident_not_found(incident_id)
    return Incident.from_document(incident_id, data)


def fetch_guest(store: AtomicStore, guest_id: str) -> Guest:
    data = retried_read(store.get, GUESTS, guest_id)
    if data is None:
        raise guest_not_found(guest_id)
    return Guest.from_document(guest_id, data)
