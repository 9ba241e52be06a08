"""
Inactivity scanner — the periodic sweep that drives escalation and handovers.

One InactivityScanner is built in the FastAPI lifespan and kept on
app.state.scanner; nothing else holds scanner state.

Sweep
-----
  1. Load ids of users whose tracking is not paused.
  2. Check them in batches of `batch_size`. Members of a batch run
     concurrently, each in a worker thread with its own Session, and one
     user's failure is logged and contained. Batches run one after the other
     with `batch_delay` seconds between them to spread database load.
  3. Drain the handover attention queue (expired grace periods and later
     phases) one process at a time.

Scheduling
----------
APScheduler AsyncIOScheduler, interval job, first run immediately. The job
only spawns the sweep as its own asyncio task and returns, so stop() drops
the schedule without cancelling a sweep that is already running. A tick
that finds the previous sweep still running is skipped, and `run_now()`
(POST /system/scan) joins the running sweep rather than starting a second
one, so two sweeps never evaluate the same cooldowns at once.
"""
from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Optional

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import or_
from sqlalchemy.orm import Session

from deadman.core.clock import as_utc, utcnow
from deadman.core.config import settings
from deadman.models.inactivity_settings import InactivitySettings
from deadman.models.system_status import SystemStatusType
from deadman.models.user import User
from deadman.services.activity import get_user_activity_status
from deadman.services.escalation import EscalationAction, evaluate_and_escalate
from deadman.services.handover import advance_handover, get_handovers_needing_attention
from deadman.services.inactivity_settings import get_or_create_settings, is_tracking_paused
from deadman.services.notifications import NotificationDispatcher
from deadman.services.system_status import get_current_system_status, is_system_in_maintenance

logger = structlog.get_logger(__name__)

JOB_ID = "inactivity_sweep"


class CheckOutcome:
    CHECKED = "checked"
    SKIPPED = "skipped"      # maintenance window or user paused
    FAILED  = "failed"


@dataclass
class SweepResult:
    started_at: datetime
    finished_at: Optional[datetime] = None
    total_users: int = 0
    batches: int = 0
    checked: int = 0
    skipped: int = 0
    failed: int = 0
    handovers_advanced: int = 0
    failed_user_ids: list[int] = field(default_factory=list)


class InactivityScanner:

    def __init__(
        self,
        session_factory,
        dispatcher: Optional[NotificationDispatcher] = None,
        check_interval: timedelta = timedelta(minutes=15),
        batch_size: int = 50,
        batch_delay: float = 1.0,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.session_factory = session_factory
        self.dispatcher = dispatcher or NotificationDispatcher()
        self.check_interval = check_interval
        self.batch_size = batch_size
        self.batch_delay = batch_delay

        self._scheduler: Optional[AsyncIOScheduler] = None
        self._inflight: Optional[asyncio.Task] = None
        self.last_sweep: Optional[SweepResult] = None

    @classmethod
    def from_settings(cls, session_factory, dispatcher: Optional[NotificationDispatcher] = None):
        return cls(
            session_factory,
            dispatcher=dispatcher,
            check_interval=timedelta(seconds=settings.SCANNER_INTERVAL_SECONDS),
            batch_size=settings.SCANNER_BATCH_SIZE,
            batch_delay=settings.SCANNER_BATCH_DELAY_SECONDS,
        )

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None

    def start(self) -> None:
        """Must be called from inside a running event loop."""
        if self._scheduler is not None:
            logger.info("scanner_already_running")
            return

        scheduler = AsyncIOScheduler(timezone="UTC")
        scheduler.add_job(
            self._tick,
            trigger=IntervalTrigger(seconds=self.check_interval.total_seconds()),
            id=JOB_ID,
            name="Inactivity sweep",
            next_run_time=utcnow(),
            max_instances=1,
            coalesce=True,
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info(
            "scanner_started",
            interval_seconds=self.check_interval.total_seconds(),
            batch_size=self.batch_size,
        )

    def stop(self) -> None:
        if self._scheduler is None:
            logger.info("scanner_not_running")
            return
        self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("scanner_stopped", sweep_in_progress=self.sweep_in_progress)

    @property
    def sweep_in_progress(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    async def wait_for_sweep(self, timeout: Optional[float] = None) -> None:
        """Let an in-flight sweep finish (used on shutdown before the engine is disposed)."""
        if not self.sweep_in_progress:
            return
        done, _ = await asyncio.wait({self._inflight}, timeout=timeout)
        if not done:
            logger.warning("scanner_sweep_still_running", timeout=timeout)

    async def _tick(self) -> None:
        if self.sweep_in_progress:
            logger.info("scanner_tick_skipped", reason="previous sweep still running")
            return
        self._spawn_sweep()

    def _spawn_sweep(self) -> asyncio.Task:
        """The in-flight sweep, started first if none is running."""
        if not self.sweep_in_progress:
            self._inflight = asyncio.ensure_future(self._run_sweep())
        return self._inflight

    async def _run_sweep(self) -> Optional[SweepResult]:
        try:
            return await self.check_all_users()
        except Exception:
            logger.exception("scanner_sweep_failed")
            return None

    async def run_now(self) -> Optional[SweepResult]:
        """
        Sweep on demand. Joins the sweep already running instead of starting
        a second one. None if the sweep failed.
        """
        if self.sweep_in_progress:
            logger.info("manual_sweep_joined_running")
        # shield: a caller that goes away must not cancel the shared sweep
        return await asyncio.shield(self._spawn_sweep())

    # -----------------------------------------------------------------------
    # Sweep
    # -----------------------------------------------------------------------

    def get_active_user_ids(self, now: Optional[datetime] = None) -> list[int]:
        """Users without settings count as active: settings are created lazily."""
        now = now or utcnow()
        db: Session = self.session_factory()
        try:
            rows = (
                db.query(User.id)
                .outerjoin(InactivitySettings, InactivitySettings.user_id == User.id)
                .filter(
                    or_(
                        InactivitySettings.user_id.is_(None),
                        InactivitySettings.is_paused.is_(False),
                        InactivitySettings.paused_until <= now,
                    )
                )
                .order_by(User.id)
                .all()
            )
            return [row.id for row in rows]
        finally:
            db.close()

    async def check_all_users(self) -> SweepResult:
        result = SweepResult(started_at=utcnow())
        user_ids = await asyncio.to_thread(self.get_active_user_ids)
        result.total_users = len(user_ids)
        logger.info("sweep_started", users=len(user_ids))

        for offset in range(0, len(user_ids), self.batch_size):
            batch = user_ids[offset:offset + self.batch_size]
            outcomes = await asyncio.gather(
                *(asyncio.to_thread(self.check_user_inactivity, uid) for uid in batch),
                return_exceptions=True,
            )
            result.batches += 1

            for user_id, outcome in zip(batch, outcomes):
                if isinstance(outcome, BaseException):
                    logger.error("user_check_crashed", user_id=user_id, exc_info=outcome)
                    result.failed += 1
                    result.failed_user_ids.append(user_id)
                elif outcome == CheckOutcome.FAILED:
                    result.failed += 1
                    result.failed_user_ids.append(user_id)
                elif outcome == CheckOutcome.SKIPPED:
                    result.skipped += 1
                else:
                    result.checked += 1

            if offset + self.batch_size < len(user_ids) and self.batch_delay > 0:
                await asyncio.sleep(self.batch_delay)

        result.handovers_advanced = await asyncio.to_thread(self.process_handover_queue)
        result.finished_at = utcnow()
        self.last_sweep = result
        logger.info(
            "sweep_finished",
            batches=result.batches,
            checked=result.checked,
            skipped=result.skipped,
            failed=result.failed,
            handovers_advanced=result.handovers_advanced,
            duration_seconds=(result.finished_at - result.started_at).total_seconds(),
        )
        return result

    def check_user_inactivity(self, user_id: int, now: Optional[datetime] = None) -> str:
        """Check one user in a fresh session. Never raises."""
        db: Session = self.session_factory()
        try:
            return self._check_user(db, user_id, as_utc(now) if now else utcnow())
        except Exception:
            db.rollback()
            logger.exception("user_check_failed", user_id=user_id)
            return CheckOutcome.FAILED
        finally:
            db.close()

    def _check_user(self, db: Session, user_id: int, now: datetime) -> str:
        if is_system_in_maintenance(db):
            return CheckOutcome.SKIPPED

        user_settings = get_or_create_settings(db, user_id)
        if is_tracking_paused(user_settings, now):
            return CheckOutcome.SKIPPED

        status = get_user_activity_status(db, user_id, now=now)
        if status is None:
            return CheckOutcome.FAILED

        escalation = evaluate_and_escalate(db, user_id, status, self.dispatcher, now=now)
        if escalation.action != EscalationAction.NONE:
            logger.info(
                "user_escalated",
                user_id=user_id,
                action=escalation.action,
                skipped=escalation.skipped,
                threshold_percentage=round(status.threshold_percentage, 2),
            )
        return CheckOutcome.CHECKED

    def process_handover_queue(self, now: Optional[datetime] = None) -> int:
        """Advance every process in the attention queue. Returns how many moved."""
        now = as_utc(now) if now else utcnow()
        db: Session = self.session_factory()
        advanced = 0
        try:
            if is_system_in_maintenance(db):
                logger.info("handover_queue_skipped", reason="maintenance")
                return 0
            for process in get_handovers_needing_attention(db, now=now):
                handover_id = process.id
                try:
                    if advance_handover(db, process, self.dispatcher, now=now) is not None:
                        advanced += 1
                except Exception:
                    db.rollback()
                    logger.exception("handover_advance_failed", handover_id=handover_id)
            return advanced
        finally:
            db.close()

    # -----------------------------------------------------------------------
    # Introspection
    # -----------------------------------------------------------------------

    def get_stats(self) -> dict:
        stats = {
            "is_running": self.is_running,
            "check_interval": self.check_interval.total_seconds(),
            "active_users": None,
            "system_status": SystemStatusType.OPERATIONAL.value,
            "last_sweep": asdict(self.last_sweep) if self.last_sweep else None,
        }
        try:
            stats["active_users"] = len(self.get_active_user_ids())
            db: Session = self.session_factory()
            try:
                current = get_current_system_status(db)
                if current is not None:
                    stats["system_status"] = current.status.value
            finally:
                db.close()
        except Exception:
            logger.exception("scanner_stats_failed")
        return stats
