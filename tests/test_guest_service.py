"""Tests for guest creation, lookup, allowance refresh and blocking."""

from datetime import timedelta

import pytest

from app.core.errors import GUEST_BLOCKED, GUEST_NOT_FOUND, LimitExceededError, NotFoundError, ValidationError
from app.models.base import utc_now
from app.models.guest import Guest, GuestStatus
from app.models.identity import VoterIdentity
from app.services.guest_service import GuestService
from app.services.incident_service import IncidentService
from app.store.base import GUESTS, INCIDENTS
from app.store.memory_store import MemoryAtomicStore


def _guest(action_count=0, age=timedelta(), session=timedelta(), max_actions=10) -> Guest:
    now = utc_now()
    return Guest(
        id="guest_x",
        action_count=action_count,
        max_actions=max_actions,
        created_at=now - age,
        session_started_at=now - session,
        last_active_at=now,
        expires_at=now + timedelta(days=30),
    )


class TestCreateGuest:
    def test_defaults(self, guest_service):
        guest = guest_service.create_guest()
        assert guest.id.startswith("guest_")
        assert guest.action_count == 0
        assert guest.max_actions == 10
        assert guest.expires_at - guest.created_at == timedelta(days=30)

    def test_ids_are_unique(self, guest_service):
        assert len({guest_service.create_guest().id for _ in range(20)}) == 20

    def test_round_trip(self, guest_service):
        guest = guest_service.create_guest()
        assert guest_service.get_guest(guest.id) == guest

    def test_status_view(self, guest_service):
        status = GuestStatus.from_guest(guest_service.create_guest())
        assert status.remaining_actions == 10
        assert status.can_perform_action is True


class TestGetGuest:
    def test_not_found(self, guest_service):
        with pytest.raises(NotFoundError) as exc_info:
            guest_service.get_guest("guest_missing")
        assert exc_info.value.code == GUEST_NOT_FOUND


class TestConsume:
    def test_consume_until_exhausted(self, guest_service):
        guest = guest_service.create_guest()
        for expected in range(1, 11):
            assert guest_service.try_consume_guest_action(guest.id).action_count == expected
        with pytest.raises(LimitExceededError):
            guest_service.try_consume_guest_action(guest.id)


class TestComputeMaxActions:
    @pytest.mark.parametrize("session_hours,age_days,action_count,expected", [
        (0, 0, 0, 10),
        (2, 0, 0, 15),
        (5, 0, 0, 25),
        (0, 8, 0, 15),
        (0, 31, 0, 25),
        (5, 31, 0, 40),
        (5, 31, 101, 101),
        (0, 0, 3, 10),
    ])
    def test_allowance(self, session_hours, age_days, action_count, expected):
        guest = _guest(action_count=action_count, age=timedelta(days=age_days), session=timedelta(hours=session_hours))
        assert GuestService.compute_max_actions(guest, utc_now()) == expected

    def test_heavy_use_penalty(self, monkeypatch):
        monkeypatch.setattr(GuestService, "HEAVY_USE_THRESHOLD", 2)
        guest = _guest(action_count=3, session=timedelta(hours=2))
        assert GuestService.compute_max_actions(guest, utc_now()) == 10

    def test_capped(self, monkeypatch):
        monkeypatch.setattr(GuestService, "SESSION_BONUSES", ((1, 30), (4, 30)))
        guest = _guest(session=timedelta(hours=5))
        assert GuestService.compute_max_actions(guest, utc_now()) == 50

    def test_never_below_spent_actions(self):
        guest = _guest(action_count=60, max_actions=60)
        assert GuestService.compute_max_actions(guest, utc_now()) == 60


class TestRefreshAllowance:
    def test_long_session_raises_allowance(self, guest_service, make_guest):
        make_guest("g1", action_count=10, max_actions=10, session=timedelta(hours=2))
        guest = guest_service.refresh_guest_allowance("g1")
        assert guest.max_actions == 15
        assert guest.can_perform_action
        assert guest_service.try_consume_guest_action("g1").action_count == 11

    def test_unchanged_allowance_is_not_rewritten(self, guest_service, make_guest, store):
        make_guest("g1")
        guest = guest_service.refresh_guest_allowance("g1")
        assert guest.max_actions == 10
        assert store.get(GUESTS, "g1")["version"] == 1

    def test_not_found(self, guest_service):
        with pytest.raises(NotFoundError):
            guest_service.refresh_guest_allowance("missing")


class BlockBeforeIncrementStore(MemoryAtomicStore):
    """Runs ``before_increment`` once, right before the next conditional increment."""

    def __init__(self):
        super().__init__()
        self.before_increment = None

    def increment_if_below(self, *args, **kwargs):
        hook, self.before_increment = self.before_increment, None
        if hook:
            hook()
        return super().increment_if_below(*args, **kwargs)


class TestBlocking:
    def test_blocked_guest_cannot_act(self, guest_service, make_guest, store):
        make_guest("g1", action_count=2)
        blocked = guest_service.block_guest("g1", "posting spam", duration_hours=6)

        assert blocked.is_blocked is True
        assert blocked.block_expires_at - blocked.blocked_at == timedelta(hours=6)
        assert GuestStatus.from_guest(blocked).is_blocked is True
        assert blocked.can_perform_action is False

        with pytest.raises(LimitExceededError) as exc_info:
            guest_service.try_consume_guest_action("g1")
        assert exc_info.value.code == GUEST_BLOCKED
        assert exc_info.value.details["reason"] == "posting spam"
        assert exc_info.value.details["block_expires_at"] == blocked.block_expires_at.isoformat()
        assert store.get(GUESTS, "g1")["action_count"] == 2

    def test_blocked_guest_cannot_report(self, guest_service, incident_service, make_guest, make_draft, store):
        make_guest("g1")
        guest_service.block_guest("g1", "abuse")
        with pytest.raises(LimitExceededError):
            incident_service.create_incident(make_draft(), VoterIdentity.guest("g1"))
        assert store.query_in(INCIDENTS, "status", ["reported"]) == []

    def test_block_wins_over_exhausted_quota(self, guest_service, make_guest):
        make_guest("g1", action_count=10, max_actions=10)
        guest_service.block_guest("g1", "abuse")
        with pytest.raises(LimitExceededError) as exc_info:
            guest_service.try_consume_guest_action("g1")
        assert exc_info.value.code == GUEST_BLOCKED

    def test_unblock_restores_actions(self, guest_service, make_guest):
        make_guest("g1")
        guest_service.block_guest("g1", "abuse")
        unblocked = guest_service.unblock_guest("g1")

        assert unblocked.is_blocked is False
        assert unblocked.block_reason is None
        assert unblocked.block_expires_at is None
        assert guest_service.try_consume_guest_action("g1").action_count == 1

    def test_unblock_of_unblocked_guest_writes_nothing(self, guest_service, make_guest, store):
        make_guest("g1")
        assert guest_service.unblock_guest("g1").is_blocked is False
        assert store.get(GUESTS, "g1")["version"] == 1

    def test_expired_block_no_longer_applies(self, guest_service, make_guest, store):
        make_guest("g1")
        guest_service.block_guest("g1", "abuse")

        def expire(document):
            document["block_expires_at"] = (utc_now() - timedelta(minutes=1)).isoformat()
            return document

        store.update_if(GUESTS, "g1", expire)
        assert guest_service.try_consume_guest_action("g1").action_count == 1

    def test_block_landing_before_increment_is_honoured(self, weights, audit_hook):
        store = BlockBeforeIncrementStore()
        incidents = IncidentService(store, weights, audit_hook)
        guests = GuestService(store, incidents.counters)
        guest = guests.create_guest()

        store.before_increment = lambda: guests.block_guest(guest.id, "abuse")
        with pytest.raises(LimitExceededError) as exc_info:
            guests.try_consume_guest_action(guest.id)

        assert exc_info.value.code == GUEST_BLOCKED
        assert store.get(GUESTS, guest.id)["action_count"] == 0

    @pytest.mark.parametrize("reason,hours", [("", 24), ("x" * 201, 24), ("abuse", 0)])
    def test_bad_block_request(self, guest_service, make_guest, reason, hours):
        make_guest("g1")
        with pytest.raises(ValidationError):
            guest_service.block_guest("g1", reason, duration_hours=hours)

    def test_unknown_guest(self, guest_service):
        with pytest.raises(NotFoundError):
            guest_service.block_guest("missing", "abuse")
        with pytest.raises(NotFoundError):
            guest_service.unblock_guest("missing")
