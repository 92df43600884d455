"""Tests for the incident status state machine."""

from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from app.core.errors import STALE_STATE, NotFoundError, TransitionError, ValidationError
from app.models.base import utc_now
from app.models.identity import VoterIdentity
from app.models.incident import TERMINAL_STATUSES, AssignmentStatus, IncidentStatus, Severity
from app.services.audit_hook import AuditHook
from app.services.incident_service import IncidentService
from app.services.status_workflow import StatusWorkflowEngine
from app.store.base import INCIDENTS
from app.store.memory_store import MemoryAtomicStore

S = IncidentStatus


class InterleavingStore(MemoryAtomicStore):
    """Runs ``before_write`` once, right before the next conditional write."""

    def __init__(self):
        super().__init__()
        self.before_write = None

    def update_if(self, collection, doc_id, mutate):
        hook, self.before_write = self.before_write, None
        if hook:
            hook()
        return super().update_if(collection, doc_id, mutate)


@pytest.fixture
def reported(incident_service, make_draft, make_guest):
    guest = make_guest("g-reporter", max_actions=50)
    incident, _ = incident_service.create_incident(make_draft(), VoterIdentity.guest(guest.id))
    return incident


class TestAdjacency:
    @pytest.mark.parametrize("from_status,to_status", [
        (S.REPORTED, S.VERIFIED),
        (S.REPORTED, S.DUPLICATE),
        (S.REPORTED, S.FALSE_REPORT),
        (S.REPORTED, S.CANCELLED),
        (S.VERIFIED, S.ASSIGNED),
        (S.VERIFIED, S.DUPLICATE),
        (S.VERIFIED, S.FALSE_REPORT),
        (S.VERIFIED, S.CANCELLED),
        (S.ASSIGNED, S.IN_PROGRESS),
        (S.ASSIGNED, S.CANCELLED),
        (S.IN_PROGRESS, S.RESOLVED),
        (S.IN_PROGRESS, S.CANCELLED),
        (S.RESOLVED, S.CLOSED),
    ])
    def test_allowed(self, from_status, to_status):
        assert StatusWorkflowEngine.is_valid_transition(from_status.value, to_status.value)

    def test_edge_count(self):
        edges = sum(len(targets) for targets in StatusWorkflowEngine.ALLOWED_TRANSITIONS.values())
        assert edges == 13

    @pytest.mark.parametrize("terminal", sorted(TERMINAL_STATUSES, key=lambda s: s.value))
    def test_terminal_states_have_no_exits(self, terminal):
        assert StatusWorkflowEngine.get_allowed_transitions(terminal.value) == []
        for target in IncidentStatus:
            assert not StatusWorkflowEngine.is_valid_transition(terminal.value, target.value)

    @pytest.mark.parametrize("status", list(IncidentStatus))
    def test_same_status_is_not_a_transition(self, status):
        assert not StatusWorkflowEngine.is_valid_transition(status.value, status.value)

    def test_unknown_values(self):
        assert not StatusWorkflowEngine.is_valid_transition("reported", "escalated")
        assert StatusWorkflowEngine.get_allowed_transitions("escalated") == []

    def test_no_skipping_ahead(self):
        assert not StatusWorkflowEngine.is_valid_transition("reported", "in_progress")
        assert not StatusWorkflowEngine.is_valid_transition("verified", "resolved")
        assert not StatusWorkflowEngine.is_valid_transition("assigned", "closed")


class TestTransitionStatus:
    def test_reported_to_in_progress_is_rejected(self, incident_service, reported, official):
        with pytest.raises(TransitionError) as exc_info:
            incident_service.transition_status(reported.id, "in_progress", official)

        assert exc_info.value.code == "INVALID_TRANSITION"
        assert exc_info.value.details["allowed"] == ["verified", "duplicate", "false_report", "cancelled"]
        assert incident_service.get_incident(reported.id).status is S.REPORTED

    def test_full_lifecycle(self, incident_service, reported, official):
        for status in (S.VERIFIED, S.ASSIGNED, S.IN_PROGRESS, S.RESOLVED, S.CLOSED):
            assignee = "crew-7" if status is S.ASSIGNED else None
            incident = incident_service.transition_status(
                reported.id, status, official, reason=f"to {status.value}", assignee_id=assignee
            )

        assert incident.status is S.CLOSED
        assert [entry.status for entry in incident.status_history] == [
            S.REPORTED, S.VERIFIED, S.ASSIGNED, S.IN_PROGRESS, S.RESOLVED, S.CLOSED,
        ]
        assert incident.status_history[-1].actor == official
        assert incident.status_history[-1].reason == "to closed"
        assert incident.verified_at and incident.assigned_at and incident.resolved_at and incident.closed_at
        assert incident.resolution_minutes == 0
        assert incident.current_assignee == "crew-7"
        assert incident.version == 6

    def test_history_prefix_is_never_edited(self, incident_service, reported, official):
        before = reported.status_history
        incident = incident_service.transition_status(reported.id, S.VERIFIED, official)
        assert incident.status_history[: len(before)] == before

    def test_terminal_incident_rejects_everything(self, incident_service, reported, official):
        incident_service.transition_status(reported.id, S.CANCELLED, official)
        with pytest.raises(TransitionError) as exc_info:
            incident_service.transition_status(reported.id, S.VERIFIED, official)
        assert exc_info.value.details["allowed"] == []

    def test_same_status_rejected(self, incident_service, reported, official):
        with pytest.raises(TransitionError):
            incident_service.transition_status(reported.id, S.REPORTED, official)

    def test_unknown_status(self, incident_service, reported, official):
        with pytest.raises(ValidationError):
            incident_service.transition_status(reported.id, "escalated", official)

    def test_unknown_incident(self, incident_service, official):
        with pytest.raises(NotFoundError):
            incident_service.transition_status("missing", S.VERIFIED, official)

    def test_audit_event_recorded(self, incident_service, reported, official, audit_events):
        incident_service.transition_status(reported.id, S.VERIFIED, official, reason="confirmed on site")
        event = audit_events[-1]
        assert event["event"] == "status_transition"
        assert event["actor"] == "registered:official-1"
        assert event["details"] == {"from": "reported", "to": "verified", "reason": "confirmed on site"}

    def test_failing_audit_sink_does_not_fail_transition(self, store, weights, make_draft, official):
        def broken_sink(event):
            raise RuntimeError("audit backend down")

        service = IncidentService(store, weights, AuditHook([broken_sink]))
        incident, _ = service.create_incident(make_draft(), official)
        updated = service.transition_status(incident.id, S.VERIFIED, official)
        assert updated.status is S.VERIFIED


class TestConcurrentTransitions:
    def test_stale_state_when_status_moves_underneath(self, weights, audit_hook, make_draft, official):
        store = InterleavingStore()
        service = IncidentService(store, weights, audit_hook)
        incident, _ = service.create_incident(make_draft(), official)

        other = VoterIdentity.registered("official-2")
        store.before_write = lambda: service.transition_status(incident.id, S.CANCELLED, other)

        with pytest.raises(TransitionError) as exc_info:
            service.transition_status(incident.id, S.VERIFIED, official)

        assert exc_info.value.code == STALE_STATE
        final = service.get_incident(incident.id)
        assert final.status is S.CANCELLED
        assert [entry.status for entry in final.status_history] == [S.REPORTED, S.CANCELLED]

    def test_racing_officials_commit_exactly_one(self, incident_service, reported):
        officials = [VoterIdentity.registered(f"official-{i}") for i in range(8)]

        def attempt(actor):
            try:
                return incident_service.transition_status(reported.id, S.VERIFIED, actor)
            except TransitionError as e:
                return e

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(attempt, officials))

        successes = [r for r in results if not isinstance(r, TransitionError)]
        assert len(successes) == 1
        final = incident_service.get_incident(reported.id)
        assert final.status is S.VERIFIED
        assert len(final.status_history) == 2
        assert final.status_history[-1].status is final.status


class TestScoreOnTransition:
    def test_affects_score(self, incident_service):
        engine = incident_service.workflow
        assert engine.affects_score(S.REPORTED, S.VERIFIED)
        assert engine.affects_score(S.VERIFIED, S.ASSIGNED)
        assert not engine.affects_score(S.ASSIGNED, S.IN_PROGRESS)

    def test_apply_transition_rescoring(self, incident_service, reported, official):
        engine = incident_service.workflow
        now = utc_now()
        stale = reported.model_copy(update={"verification_score": 42})

        verified = engine.apply_transition(stale, S.VERIFIED, official, None, now)
        assert verified.verification_score == reported.verification_score

        assigned = engine.apply_transition(
            verified.model_copy(update={"status": S.ASSIGNED, "verification_score": 42}),
            S.IN_PROGRESS, official, None, now,
        )
        assert assigned.verification_score == 42

    def test_resolution_minutes(self, incident_service, reported, official):
        engine = incident_service.workflow
        incident = reported.model_copy(update={"status": S.IN_PROGRESS})
        resolved = engine.apply_transition(
            incident, S.RESOLVED, official, None, reported.created_at + timedelta(minutes=95)
        )
        assert resolved.resolution_minutes == 95


class TestDuplicateOf:
    @pytest.fixture
    def original(self, incident_service, make_draft, official):
        incident, _ = incident_service.create_incident(make_draft(longitude=-122.3, latitude=37.8), official)
        return incident

    def test_mark_duplicate(self, incident_service, reported, original, official):
        incident = incident_service.transition_status(
            reported.id, S.DUPLICATE, official, reason="same crash", duplicate_of=original.id
        )
        assert incident.status is S.DUPLICATE
        assert incident.duplicate_of == original.id
        assert original.id in incident.related_incidents

    def test_self_reference_rejected(self, incident_service, reported, official):
        with pytest.raises(ValidationError):
            incident_service.transition_status(reported.id, S.DUPLICATE, official, duplicate_of=reported.id)

    def test_unknown_original_rejected(self, incident_service, reported, official):
        with pytest.raises(ValidationError):
            incident_service.transition_status(reported.id, S.DUPLICATE, official, duplicate_of="missing")

    def test_direct_cycle_rejected(self, incident_service, reported, original, official):
        incident_service.transition_status(original.id, S.DUPLICATE, official, duplicate_of=reported.id)
        with pytest.raises(ValidationError):
            incident_service.transition_status(reported.id, S.DUPLICATE, official, duplicate_of=original.id)

    def test_only_with_duplicate_status(self, incident_service, reported, original, official):
        with pytest.raises(ValidationError):
            incident_service.transition_status(reported.id, S.VERIFIED, official, duplicate_of=original.id)

    def test_opposite_markings_in_flight_can_both_commit(self, weights, audit_hook, make_draft, official):
        store = InterleavingStore()
        service = IncidentService(store, weights, audit_hook)
        first, _ = service.create_incident(make_draft(), official)
        second, _ = service.create_incident(make_draft(longitude=-122.3, latitude=37.8), official)

        store.before_write = lambda: service.transition_status(second.id, S.DUPLICATE, official, duplicate_of=first.id)
        service.transition_status(first.id, S.DUPLICATE, official, duplicate_of=second.id)

        assert service.get_incident(first.id).duplicate_of == second.id
        assert service.get_incident(second.id).duplicate_of == first.id


class TestReasonLength:
    def test_over_long_reason_is_an_engine_error(self, incident_service, reported, official):
        with pytest.raises(ValidationError) as exc_info:
            incident_service.transition_status(reported.id, S.VERIFIED, official, reason="x" * 501)

        assert exc_info.value.code == "VALIDATION_ERROR"
        assert exc_info.value.details == {"length": 501, "max_length": 500}
        assert incident_service.get_incident(reported.id).status is S.REPORTED

    def test_reason_at_limit_is_accepted(self, incident_service, reported, official):
        incident = incident_service.transition_status(reported.id, S.VERIFIED, official, reason="x" * 500)
        assert incident.status_history[-1].reason == "x" * 500


class TestAssignment:
    @pytest.fixture
    def verified(self, incident_service, reported, official):
        return incident_service.transition_status(reported.id, S.VERIFIED, official)

    def test_assigned_requires_assignee(self, incident_service, verified, official):
        with pytest.raises(ValidationError):
            incident_service.transition_status(verified.id, S.ASSIGNED, official)
        assert incident_service.get_incident(verified.id).status is S.VERIFIED

    def test_assignee_only_with_assigned(self, incident_service, verified, official):
        with pytest.raises(ValidationError):
            incident_service.transition_status(verified.id, S.CANCELLED, official, assignee_id="crew-1")

    def test_non_adjacent_still_reports_transition_error(self, incident_service, reported, official):
        with pytest.raises(TransitionError):
            incident_service.transition_status(reported.id, S.ASSIGNED, official, assignee_id="crew-1")

    def test_assignment_written_with_transition(self, incident_service, verified, official, audit_events):
        incident = incident_service.assign_incident(
            verified.id, "crew-1", official, priority=Severity.HIGH, notes="bring a tow truck"
        )

        assert incident.status is S.ASSIGNED
        assert incident.current_assignee == "crew-1"
        assert len(incident.assignments) == 1
        assignment = incident.assignments[0]
        assert assignment.assigned_by == official
        assert assignment.priority is Severity.HIGH
        assert assignment.notes == "bring a tow truck"
        assert assignment.status is AssignmentStatus.PENDING
        assert assignment.assigned_at == incident.assigned_at
        assert incident.version == verified.version + 1
        assert audit_events[-1]["details"]["assignee_id"] == "crew-1"

    def test_reassignment_keeps_status(self, incident_service, verified, official, audit_events):
        incident_service.assign_incident(verified.id, "crew-1", official)
        incident_service.transition_status(verified.id, S.IN_PROGRESS, official)

        incident = incident_service.assign_incident(verified.id, "crew-2", official)

        assert incident.status is S.IN_PROGRESS
        assert incident.current_assignee == "crew-2"
        assert [a.assignee_id for a in incident.assignments] == ["crew-1", "crew-2"]
        assert [a.status for a in incident.assignments] == [AssignmentStatus.REASSIGNED, AssignmentStatus.PENDING]
        assert [entry.status for entry in incident.status_history] == [S.REPORTED, S.VERIFIED, S.ASSIGNED, S.IN_PROGRESS]
        assert audit_events[-1]["event"] == "incident_reassigned"

    @pytest.mark.parametrize("status", [S.RESOLVED, S.CANCELLED])
    def test_cannot_assign_outside_response(self, incident_service, reported, official, status):
        incident = reported.model_copy(update={"status": status})
        incident_service.store.update_if(INCIDENTS, reported.id, lambda _: incident.to_document())
        with pytest.raises(TransitionError):
            incident_service.assign_incident(reported.id, "crew-1", official)

    def test_reported_incident_cannot_be_assigned(self, incident_service, reported, official):
        with pytest.raises(TransitionError):
            incident_service.assign_incident(reported.id, "crew-1", official)
        assert incident_service.get_incident(reported.id).assignments == []

    def test_empty_assignee(self, incident_service, verified, official):
        with pytest.raises(ValidationError):
            incident_service.assign_incident(verified.id, "", official)

    def test_reassignment_loses_race(self, weights, audit_hook, make_draft, official):
        store = InterleavingStore()
        service = IncidentService(store, weights, audit_hook)
        incident, _ = service.create_incident(make_draft(), official)
        service.transition_status(incident.id, S.VERIFIED, official)
        service.assign_incident(incident.id, "crew-1", official)

        store.before_write = lambda: service.transition_status(incident.id, S.CANCELLED, official)
        with pytest.raises(TransitionError) as exc_info:
            service.assign_incident(incident.id, "crew-2", official)

        assert exc_info.value.code == STALE_STATE
        assert service.get_incident(incident.id).current_assignee == "crew-1"
