"""
Tests for the handover orchestrator state machine.

Covered:
  - initiate is idempotent: same id, exactly one row
  - grace period of 48h and trigger metadata
  - one non-terminal process per user, enforced by the partial unique index
  - conditional transitions: a second caller is a no-op
  - only the defined edges; nothing leaves COMPLETED or CANCELLED
  - successor fan-out, first response wins, deadlines expire
  - attention queue contents and order
  - full lifecycle GRACE_PERIOD → COMPLETED
"""
from __future__ import annotations

import json
from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from conftest import T0, days
from deadman.core.clock import as_utc
from deadman.core.errors import (
    HandoverNotActiveError,
    HandoverNotFoundError,
    InvalidHandoverTransitionError,
    SuccessorNotFoundError,
)
from deadman.models.handover_process import HandoverProcess, HandoverProcessStatus
from deadman.models.notification_delivery import NotificationDelivery, NotificationType
from deadman.models.successor_notification import SuccessorNotification, VerificationStatus
from deadman.services.handover import (
    ALLOWED_TRANSITIONS,
    advance_handover,
    cancel_handover,
    complete_handover,
    get_handover_status,
    get_handovers_needing_attention,
    initiate_handover,
    notify_successors,
    process_grace_period_expiration,
    process_successor_response,
    transition,
)

S = HandoverProcessStatus
GRACE_OVER = T0 + timedelta(hours=49)


@pytest.fixture()
def user(make_user):
    return make_user(created_at=T0 - days(90))


@pytest.fixture()
def process(db, user):
    return initiate_handover(db, user.id, now=T0)


@pytest.fixture()
def successors(user, make_successor):
    return [
        make_successor(user, "alice@example.com", "Alice"),
        make_successor(user, "bob@example.com", "Bob"),
    ]


# ---------------------------------------------------------------------------
# Initiation
# ---------------------------------------------------------------------------

class TestInitiate:
    def test_creates_grace_period(self, db, process):
        assert process.status == S.GRACE_PERIOD
        assert as_utc(process.initiated_at) == T0
        assert as_utc(process.grace_period_ends) == T0 + timedelta(hours=48)

    def test_metadata_records_trigger(self, process):
        meta = json.loads(process.process_metadata)
        assert meta == {
            "gracePeriodHours": 48,
            "initiatedBy": "inactivity_monitor",
            "reason": "inactivity_threshold_exceeded",
        }

    def test_idempotent(self, db, user, process):
        again = initiate_handover(db, user.id, now=T0 + timedelta(hours=1))
        assert again.id == process.id
        assert db.query(HandoverProcess).filter(HandoverProcess.user_id == user.id).count() == 1

    def test_new_process_after_cancel(self, db, user, process):
        assert cancel_handover(db, user.id, "checked in", now=T0 + timedelta(hours=1))
        fresh = initiate_handover(db, user.id, now=T0 + days(100))
        assert fresh.id != process.id
        assert fresh.status == S.GRACE_PERIOD

    def test_unique_index_rejects_second_active(self, db, user, process):
        db.add(HandoverProcess(
            user_id=user.id,
            status=S.AWAITING_SUCCESSORS,
            initiated_at=T0,
            grace_period_ends=T0,
            created_at=T0,
            updated_at=T0,
        ))
        with pytest.raises(IntegrityError):
            db.commit()
        db.rollback()

    def test_terminal_rows_do_not_conflict(self, db, user, process):
        cancel_handover(db, user.id, "first", now=T0)
        second = initiate_handover(db, user.id, now=T0 + days(1))
        cancel_handover(db, user.id, "second", now=T0 + days(1))
        third = initiate_handover(db, user.id, now=T0 + days(2))
        assert len({process.id, second.id, third.id}) == 3


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------

class TestTransitions:
    def test_cancel(self, db, user, process):
        assert cancel_handover(db, user.id, "User check-in", now=T0 + timedelta(hours=2)) is True
        db.refresh(process)
        assert process.status == S.CANCELLED
        assert process.cancellation_reason == "User check-in"
        assert as_utc(process.cancelled_at) == T0 + timedelta(hours=2)
        assert get_handover_status(db, user.id) is None

    def test_cancel_without_process_is_noop(self, db, user):
        assert cancel_handover(db, user.id, "nothing to cancel") is False

    def test_grace_expiration_runs_once(self, db, process):
        assert process_grace_period_expiration(db, process.id, now=GRACE_OVER) is True
        assert process_grace_period_expiration(db, process.id, now=GRACE_OVER) is False
        db.refresh(process)
        assert process.status == S.AWAITING_SUCCESSORS

    def test_grace_expiration_after_cancel_is_noop(self, db, user, process):
        cancel_handover(db, user.id, "checked in")
        assert process_grace_period_expiration(db, process.id, now=GRACE_OVER) is False
        db.refresh(process)
        assert process.status == S.CANCELLED

    @pytest.mark.parametrize("terminal", [S.COMPLETED, S.CANCELLED])
    def test_nothing_leaves_terminal_states(self, terminal):
        assert ALLOWED_TRANSITIONS[terminal] == frozenset()
        for target in S:
            with pytest.raises(InvalidHandoverTransitionError):
                transition(None, 1, terminal, target)

    def test_cannot_skip_phases(self, db, process):
        with pytest.raises(InvalidHandoverTransitionError) as exc:
            transition(db, process.id, S.GRACE_PERIOD, S.READY_FOR_TRANSFER)
        assert exc.value.details == {"from": "grace_period", "to": "ready_for_transfer"}
        db.refresh(process)
        assert process.status == S.GRACE_PERIOD

    def test_every_active_state_can_cancel(self):
        for state in (S.GRACE_PERIOD, S.AWAITING_SUCCESSORS, S.VERIFICATION_PENDING, S.READY_FOR_TRANSFER):
            assert S.CANCELLED in ALLOWED_TRANSITIONS[state]

    def test_complete_requires_ready(self, db, process):
        assert complete_handover(db, process.id) is False
        db.refresh(process)
        assert process.status == S.GRACE_PERIOD


# ---------------------------------------------------------------------------
# Successors
# ---------------------------------------------------------------------------

class TestSuccessors:
    def test_notify_creates_pending_rows(self, db, process, successors, dispatcher, channel):
        process_grace_period_expiration(db, process.id, now=GRACE_OVER)
        rows = notify_successors(db, process, dispatcher, now=GRACE_OVER)

        assert len(rows) == 2
        assert all(r.verification_status == VerificationStatus.PENDING for r in rows)
        assert all(as_utc(r.response_deadline) == GRACE_OVER + days(14) for r in rows)
        assert sorted(recipient for recipient, _ in channel.sent) == [
            "alice@example.com", "bob@example.com",
        ]
        alerts = (
            db.query(NotificationDelivery)
            .filter(NotificationDelivery.notification_type == NotificationType.SUCCESSOR_NOTIFICATION)
            .all()
        )
        assert len(alerts) == 2
        assert all(a.handover_process_id == process.id for a in alerts)

    def test_notify_twice_does_not_duplicate(self, db, process, successors, dispatcher):
        notify_successors(db, process, dispatcher, now=GRACE_OVER)
        assert notify_successors(db, process, dispatcher, now=GRACE_OVER) == []
        count = (
            db.query(SuccessorNotification)
            .filter(SuccessorNotification.handover_process_id == process.id)
            .count()
        )
        assert count == 2

    def test_first_response_wins(self, db, process, successors, dispatcher):
        notify_successors(db, process, dispatcher, now=GRACE_OVER)
        alice = successors[0]

        row = process_successor_response(db, process.id, alice.id, True, now=GRACE_OVER + days(1))
        assert row.verification_status == VerificationStatus.VERIFIED
        assert as_utc(row.verified_at) == GRACE_OVER + days(1)

        again = process_successor_response(db, process.id, alice.id, False, now=GRACE_OVER + days(2))
        assert again.verification_status == VerificationStatus.VERIFIED

    def test_response_does_not_advance_process(self, db, process, successors, dispatcher):
        process_grace_period_expiration(db, process.id, now=GRACE_OVER)
        notify_successors(db, process, dispatcher, now=GRACE_OVER)
        process_successor_response(db, process.id, successors[0].id, True, now=GRACE_OVER)
        db.refresh(process)
        assert process.status == S.AWAITING_SUCCESSORS

    def test_decline_is_recorded_as_failed(self, db, process, successors, dispatcher):
        notify_successors(db, process, dispatcher, now=GRACE_OVER)
        row = process_successor_response(db, process.id, successors[1].id, False, now=GRACE_OVER)
        assert row.verification_status == VerificationStatus.FAILED
        assert row.verified_at is None

    def test_late_response_expires(self, db, process, successors, dispatcher):
        notify_successors(db, process, dispatcher, now=GRACE_OVER)
        row = process_successor_response(db, process.id, successors[0].id, True, now=GRACE_OVER + days(15))
        assert row.verification_status == VerificationStatus.EXPIRED

    def test_unknown_handover(self, db):
        with pytest.raises(HandoverNotFoundError):
            process_successor_response(db, 424242, 1, True)

    def test_terminal_handover(self, db, user, process, successors):
        cancel_handover(db, user.id, "checked in")
        with pytest.raises(HandoverNotActiveError) as exc:
            process_successor_response(db, process.id, successors[0].id, True)
        assert exc.value.details["status"] == "cancelled"

    def test_successor_not_notified(self, db, process, successors):
        with pytest.raises(SuccessorNotFoundError):
            process_successor_response(db, process.id, successors[0].id, True)


# ---------------------------------------------------------------------------
# Attention queue
# ---------------------------------------------------------------------------

class TestAttentionQueue:
    def test_grace_period_not_due(self, db, process):
        assert get_handovers_needing_attention(db, now=T0 + timedelta(hours=47)) == []

    def test_grace_period_due(self, db, process):
        queue = get_handovers_needing_attention(db, now=GRACE_OVER)
        assert [p.id for p in queue] == [process.id]

    def test_later_phases_always_included(self, db, process):
        process_grace_period_expiration(db, process.id, now=GRACE_OVER)
        queue = get_handovers_needing_attention(db, now=T0)
        assert [p.id for p in queue] == [process.id]

    def test_terminal_excluded(self, db, user, process):
        cancel_handover(db, user.id, "checked in")
        assert get_handovers_needing_attention(db, now=GRACE_OVER) == []

    def test_oldest_first(self, db, make_user):
        later = initiate_handover(db, make_user().id, now=T0 + timedelta(hours=1))
        earlier = initiate_handover(db, make_user().id, now=T0)
        queue = get_handovers_needing_attention(db, now=T0 + days(5))
        assert [p.id for p in queue] == [earlier.id, later.id]


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

class TestLifecycle:
    def test_full_lifecycle(self, db, user, process, successors, dispatcher):
        assert advance_handover(db, process, dispatcher, now=T0 + timedelta(hours=1)) is None

        assert advance_handover(db, process, dispatcher, now=GRACE_OVER) == S.AWAITING_SUCCESSORS
        db.refresh(process)
        assert process.status == S.AWAITING_SUCCESSORS

        # nobody has answered yet
        assert advance_handover(db, process, dispatcher, now=GRACE_OVER + days(1)) is None

        process_successor_response(db, process.id, successors[0].id, True, now=GRACE_OVER + days(2))
        assert advance_handover(db, process, dispatcher, now=GRACE_OVER + days(2)) == S.VERIFICATION_PENDING
        db.refresh(process)
        assert advance_handover(db, process, dispatcher, now=GRACE_OVER + days(2)) == S.READY_FOR_TRANSFER

        db.refresh(process)
        assert advance_handover(db, process, dispatcher, now=GRACE_OVER + days(3)) is None
        assert complete_handover(db, process.id, now=GRACE_OVER + days(4)) is True
        db.refresh(process)
        assert process.status == S.COMPLETED
        assert as_utc(process.completed_at) == GRACE_OVER + days(4)
        assert get_handover_status(db, user.id) is None

    def test_grace_expiry_notifies_user(self, db, user, process, successors, dispatcher):
        advance_handover(db, process, dispatcher, now=GRACE_OVER)
        notice = (
            db.query(NotificationDelivery)
            .filter(
                NotificationDelivery.user_id == user.id,
                NotificationDelivery.notification_type == NotificationType.HANDOVER_INITIATED,
            )
            .count()
        )
        assert notice == 1

    def test_overdue_responses_expire(self, db, process, successors, dispatcher):
        advance_handover(db, process, dispatcher, now=GRACE_OVER)
        db.refresh(process)
        advance_handover(db, process, dispatcher, now=GRACE_OVER + days(15))
        statuses = {
            row.verification_status
            for row in db.query(SuccessorNotification)
            .filter(SuccessorNotification.handover_process_id == process.id)
            .all()
        }
        assert statuses == {VerificationStatus.EXPIRED}

    def test_concurrent_advances_move_once(self, db, process, successors, dispatcher):
        # two sweeps both read the process while it was in its grace period
        stale_a = db.get(HandoverProcess, process.id)
        assert advance_handover(db, stale_a, dispatcher, now=GRACE_OVER) == S.AWAITING_SUCCESSORS
        assert process_grace_period_expiration(db, process.id, now=GRACE_OVER) is False
        count = (
            db.query(SuccessorNotification)
            .filter(SuccessorNotification.handover_process_id == process.id)
            .count()
        )
        assert count == 2
