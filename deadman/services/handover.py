"""
Handover orchestrator — per-user handover state machine.

States
------
  GRACE_PERIOD → AWAITING_SUCCESSORS → VERIFICATION_PENDING
               → READY_FOR_TRANSFER → COMPLETED
  any non-terminal state → CANCELLED

Concurrency
-----------
Every status change is a conditional UPDATE keyed on the status the caller
expects (`WHERE id = :id AND status = :from`). Losing a race updates zero
rows, which is logged at info level and reported as False, never raised.
Two sweeps racing on the same process therefore advance it exactly once.

At most one non-terminal process per user: checked before insert, and
enforced by the partial unique index on handover_processes.user_id. The
loser of an insert race rolls back and gets the winner's row.

Consensus
---------
N-of-M: a process becomes READY_FOR_TRANSFER once
min(HANDOVER_REQUIRED_APPROVALS, notified successors) successors verified.
"""
from __future__ import annotations

import json
from datetime import datetime, timedelta
from typing import Optional

import structlog
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from deadman.core.clock import as_utc, utcnow
from deadman.core.config import settings
from deadman.core.errors import (
    HandoverNotActiveError,
    HandoverNotFoundError,
    InvalidHandoverTransitionError,
    SuccessorNotFoundError,
)
from deadman.models.handover_process import ACTIVE_STATUSES, HandoverProcess, HandoverProcessStatus
from deadman.models.notification_delivery import NotificationType
from deadman.models.successor import Successor
from deadman.models.successor_notification import SuccessorNotification, VerificationStatus
from deadman.services.notifications import NotificationDispatcher

logger = structlog.get_logger(__name__)

S = HandoverProcessStatus

ALLOWED_TRANSITIONS: dict[HandoverProcessStatus, frozenset[HandoverProcessStatus]] = {
    S.GRACE_PERIOD: frozenset({S.AWAITING_SUCCESSORS, S.CANCELLED}),
    S.AWAITING_SUCCESSORS: frozenset({S.VERIFICATION_PENDING, S.CANCELLED}),
    S.VERIFICATION_PENDING: frozenset({S.READY_FOR_TRANSFER, S.CANCELLED}),
    S.READY_FOR_TRANSFER: frozenset({S.COMPLETED, S.CANCELLED}),
    S.COMPLETED: frozenset(),
    S.CANCELLED: frozenset(),
}

DEFAULT_REASON = "inactivity_threshold_exceeded"
DEFAULT_INITIATOR = "inactivity_monitor"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _active_process(db: Session, user_id: int) -> Optional[HandoverProcess]:
    return (
        db.query(HandoverProcess)
        .filter(
            HandoverProcess.user_id == user_id,
            HandoverProcess.status.in_(ACTIVE_STATUSES),
        )
        .order_by(HandoverProcess.id.desc())
        .first()
    )


def latest_process(db: Session, user_id: int) -> Optional[HandoverProcess]:
    """Newest process for the user, terminal or not."""
    return (
        db.query(HandoverProcess)
        .filter(HandoverProcess.user_id == user_id)
        .order_by(HandoverProcess.id.desc())
        .first()
    )


def transition(
    db: Session,
    handover_id: int,
    from_status: HandoverProcessStatus,
    to_status: HandoverProcessStatus,
    now: Optional[datetime] = None,
    **values,
) -> bool:
    """
    Move one process along a legal edge, only if it is still in `from_status`.
    Returns True if this call made the change.
    """
    if to_status not in ALLOWED_TRANSITIONS[from_status]:
        raise InvalidHandoverTransitionError(from_status.value, to_status.value)

    now = now or utcnow()
    changes = {HandoverProcess.status: to_status, HandoverProcess.updated_at: now}
    for key, value in values.items():
        changes[getattr(HandoverProcess, key)] = value

    updated = (
        db.query(HandoverProcess)
        .filter(HandoverProcess.id == handover_id, HandoverProcess.status == from_status)
        .update(changes, synchronize_session=False)
    )
    db.commit()

    if updated == 0:
        logger.info(
            "handover_transition_skipped",
            handover_id=handover_id,
            expected=from_status.value,
            target=to_status.value,
        )
        return False
    logger.info(
        "handover_transitioned",
        handover_id=handover_id,
        from_status=from_status.value,
        to_status=to_status.value,
    )
    return True


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

def initiate_handover(
    db: Session,
    user_id: int,
    reason: str = DEFAULT_REASON,
    initiated_by: str = DEFAULT_INITIATOR,
    now: Optional[datetime] = None,
) -> HandoverProcess:
    existing = _active_process(db, user_id)
    if existing is not None:
        logger.info("handover_already_active", user_id=user_id, handover_id=existing.id)
        return existing

    now = now or utcnow()
    process = HandoverProcess(
        user_id=user_id,
        status=S.GRACE_PERIOD,
        initiated_at=now,
        grace_period_ends=now + timedelta(hours=settings.GRACE_PERIOD_HOURS),
        process_metadata=json.dumps({
            "gracePeriodHours": settings.GRACE_PERIOD_HOURS,
            "initiatedBy": initiated_by,
            "reason": reason,
        }),
        created_at=now,
        updated_at=now,
    )
    db.add(process)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        winner = _active_process(db, user_id)
        if winner is None:
            raise
        logger.info("handover_initiate_race_lost", user_id=user_id, handover_id=winner.id)
        return winner

    db.refresh(process)
    logger.info(
        "handover_initiated",
        user_id=user_id,
        handover_id=process.id,
        grace_period_ends=process.grace_period_ends.isoformat(),
    )
    return process


def cancel_handover(
    db: Session,
    user_id: int,
    reason: str,
    now: Optional[datetime] = None,
) -> bool:
    """Cancel whatever non-terminal process the user has. False if none."""
    now = now or utcnow()
    updated = (
        db.query(HandoverProcess)
        .filter(
            HandoverProcess.user_id == user_id,
            HandoverProcess.status.in_(ACTIVE_STATUSES),
        )
        .update(
            {
                HandoverProcess.status: S.CANCELLED,
                HandoverProcess.cancelled_at: now,
                HandoverProcess.cancellation_reason: reason,
                HandoverProcess.updated_at: now,
            },
            synchronize_session=False,
        )
    )
    db.commit()

    if updated == 0:
        logger.info("handover_cancel_noop", user_id=user_id)
        return False
    logger.info("handover_cancelled", user_id=user_id, reason=reason)
    return True


def process_grace_period_expiration(
    db: Session,
    handover_id: int,
    now: Optional[datetime] = None,
) -> bool:
    return transition(db, handover_id, S.GRACE_PERIOD, S.AWAITING_SUCCESSORS, now=now)


def complete_handover(
    db: Session,
    handover_id: int,
    now: Optional[datetime] = None,
) -> bool:
    now = now or utcnow()
    return transition(
        db, handover_id, S.READY_FOR_TRANSFER, S.COMPLETED, now=now, completed_at=now
    )


# ---------------------------------------------------------------------------
# Successors
# ---------------------------------------------------------------------------

def notify_successors(
    db: Session,
    process: HandoverProcess,
    dispatcher: NotificationDispatcher,
    now: Optional[datetime] = None,
) -> list[SuccessorNotification]:
    """
    Create a pending SuccessorNotification for every designated successor not
    yet notified for this process, then alert them. Safe to call again.
    """
    now = now or utcnow()
    already = {
        row.successor_id
        for row in db.query(SuccessorNotification.successor_id)
        .filter(SuccessorNotification.handover_process_id == process.id)
        .all()
    }
    successors = (
        db.query(Successor)
        .filter(Successor.user_id == process.user_id)
        .order_by(Successor.id)
        .all()
    )
    deadline = now + timedelta(days=settings.SUCCESSOR_RESPONSE_DAYS)

    created: list[SuccessorNotification] = []
    for successor in successors:
        if successor.id in already:
            continue
        row = SuccessorNotification(
            handover_process_id=process.id,
            successor_id=successor.id,
            notified_at=now,
            verification_status=VerificationStatus.PENDING,
            response_deadline=deadline,
            created_at=now,
        )
        db.add(row)
        created.append(row)

    if not created:
        if not successors:
            logger.warning("handover_without_successors", handover_id=process.id, user_id=process.user_id)
        return []

    db.commit()
    dispatcher.send_handover_alert(
        db,
        process.user_id,
        [row.successor_id for row in created],
        handover_id=process.id,
        now=now,
    )
    logger.info("successors_notified", handover_id=process.id, count=len(created))
    return created


def process_successor_response(
    db: Session,
    handover_id: int,
    successor_id: int,
    verified: bool,
    now: Optional[datetime] = None,
) -> SuccessorNotification:
    """
    Record one successor's answer. The first answer wins; later ones return
    the stored outcome unchanged. Never advances the process itself.
    """
    now = now or utcnow()
    process = db.get(HandoverProcess, handover_id)
    if process is None:
        raise HandoverNotFoundError(handover_id)
    if process.is_terminal:
        raise HandoverNotActiveError(handover_id, process.status.value)

    row = (
        db.query(SuccessorNotification)
        .filter(
            SuccessorNotification.handover_process_id == handover_id,
            SuccessorNotification.successor_id == successor_id,
        )
        .first()
    )
    if row is None:
        raise SuccessorNotFoundError(successor_id, handover_id)
    if row.verification_status != VerificationStatus.PENDING:
        return row

    if now > as_utc(row.response_deadline):
        outcome, verified_at = VerificationStatus.EXPIRED, None
    elif verified:
        outcome, verified_at = VerificationStatus.VERIFIED, now
    else:
        outcome, verified_at = VerificationStatus.FAILED, None

    updated = (
        db.query(SuccessorNotification)
        .filter(
            SuccessorNotification.id == row.id,
            SuccessorNotification.verification_status == VerificationStatus.PENDING,
        )
        .update(
            {
                SuccessorNotification.verification_status: outcome,
                SuccessorNotification.verified_at: verified_at,
            },
            synchronize_session=False,
        )
    )
    db.commit()
    db.refresh(row)

    if updated:
        logger.info(
            "successor_response_recorded",
            handover_id=handover_id,
            successor_id=successor_id,
            outcome=outcome.value,
        )
    return row


def _expire_overdue(db: Session, handover_id: int, now: datetime) -> int:
    expired = (
        db.query(SuccessorNotification)
        .filter(
            SuccessorNotification.handover_process_id == handover_id,
            SuccessorNotification.verification_status == VerificationStatus.PENDING,
            SuccessorNotification.response_deadline < now,
        )
        .update(
            {SuccessorNotification.verification_status: VerificationStatus.EXPIRED},
            synchronize_session=False,
        )
    )
    db.commit()
    if expired:
        logger.info("successor_responses_expired", handover_id=handover_id, count=expired)
    return expired


def _response_counts(db: Session, handover_id: int) -> tuple[int, int]:
    rows = (
        db.query(SuccessorNotification.verification_status)
        .filter(SuccessorNotification.handover_process_id == handover_id)
        .all()
    )
    approvals = sum(1 for (status,) in rows if status == VerificationStatus.VERIFIED)
    return approvals, len(rows)


def required_approvals(notified: int) -> int:
    return min(settings.HANDOVER_REQUIRED_APPROVALS, notified)


# ---------------------------------------------------------------------------
# Attention queue
# ---------------------------------------------------------------------------

def get_handovers_needing_attention(
    db: Session,
    now: Optional[datetime] = None,
) -> list[HandoverProcess]:
    """Grace periods that have run out, plus every later non-terminal phase. Oldest first."""
    now = now or utcnow()
    try:
        return (
            db.query(HandoverProcess)
            .filter(
                HandoverProcess.status.in_(ACTIVE_STATUSES),
                or_(
                    HandoverProcess.status != S.GRACE_PERIOD,
                    HandoverProcess.grace_period_ends <= now,
                ),
            )
            .order_by(HandoverProcess.created_at.asc(), HandoverProcess.id.asc())
            .all()
        )
    except Exception:
        db.rollback()
        logger.exception("handover_attention_query_failed")
        return []


def advance_handover(
    db: Session,
    process: HandoverProcess,
    dispatcher: Optional[NotificationDispatcher] = None,
    now: Optional[datetime] = None,
) -> Optional[HandoverProcessStatus]:
    """
    One step for a process from the attention queue. Returns the status this
    call moved it to, or None if nothing changed.
    """
    now = now or utcnow()
    dispatcher = dispatcher or NotificationDispatcher()
    handover_id, user_id, status = process.id, process.user_id, process.status

    if status == S.GRACE_PERIOD:
        if as_utc(process.grace_period_ends) > now:
            return None
        if not process_grace_period_expiration(db, handover_id, now=now):
            return None
        process = db.get(HandoverProcess, handover_id)
        notify_successors(db, process, dispatcher, now=now)
        dispatcher.send_reminder(db, user_id, NotificationType.HANDOVER_INITIATED, now=now)
        return S.AWAITING_SUCCESSORS

    if status == S.AWAITING_SUCCESSORS:
        # Covers a crash between the transition and the fan-out.
        notify_successors(db, process, dispatcher, now=now)
        _expire_overdue(db, handover_id, now)
        approvals, _ = _response_counts(db, handover_id)
        if approvals > 0 and transition(db, handover_id, status, S.VERIFICATION_PENDING, now=now):
            return S.VERIFICATION_PENDING
        return None

    if status == S.VERIFICATION_PENDING:
        _expire_overdue(db, handover_id, now)
        approvals, notified = _response_counts(db, handover_id)
        needed = required_approvals(notified)
        if needed > 0 and approvals >= needed and transition(
            db, handover_id, status, S.READY_FOR_TRANSFER, now=now
        ):
            return S.READY_FOR_TRANSFER
        return None

    # READY_FOR_TRANSFER waits for the transfer layer.
    return None


def get_handover_status(db: Session, user_id: int) -> Optional[HandoverProcess]:
    try:
        return _active_process(db, user_id)
    except Exception:
        db.rollback()
        logger.exception("handover_status_failed", user_id=user_id)
        return None
