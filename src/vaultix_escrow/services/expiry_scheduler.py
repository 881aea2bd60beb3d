"""Expiry Scheduler: time-based handling of escrows past their deadline.

Two independent jobs on an APScheduler ``AsyncIOScheduler``:
    - expiry sweep (hourly): expired PENDING escrows are auto-cancelled,
      expired ACTIVE escrows are escalated to DISPUTED.
    - warning sweep (daily, 09:00 UTC): parties of escrows expiring within
      the warning window are notified once.

Candidates are selected with a plain query and then re-checked inside each
escrow's serialized scope, since a user action may have changed the escrow
between the query and the update. A failure on one escrow is logged and
never stops the sweep.
"""

from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass, field
from datetime import timedelta
from typing import TYPE_CHECKING

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from structlog.contextvars import bound_contextvars

from vaultix_escrow.domain.clock import ensure_utc
from vaultix_escrow.domain.enums import (
    EscrowEventType,
    EscrowStatus,
    NotificationType,
    WebhookEvent,
)
from vaultix_escrow.domain.exceptions import InvalidStateError
from vaultix_escrow.infrastructure.database.repositories import EscrowRepository
from vaultix_escrow.logging_config import get_logger
from vaultix_escrow.services.context import SYSTEM_ACTOR, party_ids

if TYPE_CHECKING:
    import uuid
    from collections.abc import Awaitable, Callable
    from datetime import datetime

    from vaultix_escrow.infrastructure.database.orm_models import Escrow
    from vaultix_escrow.services.context import EscrowContext, EscrowScope

logger = get_logger(__name__)

EXPIRY_JOB_ID = "escrow-expiry-sweep"
WARNING_JOB_ID = "escrow-expiry-warning"


@dataclass
class SweepReport:
    """Outcome of one sweep, by escrow id."""

    cancelled: list[str] = field(default_factory=list)
    escalated: list[str] = field(default_factory=list)
    warned: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return len(self.cancelled) + len(self.escalated) + len(self.warned)


class ExpiryScheduler:
    """Runs the expiry and warning sweeps, on demand or on a timer."""

    def __init__(
        self,
        context: EscrowContext,
        warning_window_hours: int = 24,
        sweep_interval_minutes: int = 60,
        warning_hour: int = 9,
    ) -> None:
        self._ctx = context
        self._warning_window = timedelta(hours=warning_window_hours)
        self._sweep_interval_minutes = sweep_interval_minutes
        self._warning_hour = warning_hour
        self._scheduler: AsyncIOScheduler | None = None
        self._jobs: set[asyncio.Task] = set()
        self._stopping = False

    # ------------------------------------------------------------------
    # Timer lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start both jobs. Must be called from a running event loop."""
        if self.running:
            return
        self._stopping = False
        scheduler = AsyncIOScheduler(timezone="UTC")
        scheduler.add_job(
            self._run_job,
            IntervalTrigger(minutes=self._sweep_interval_minutes),
            args=[self.run_expiry_sweep],
            id=EXPIRY_JOB_ID,
            name="Escrow expiry sweep",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        scheduler.add_job(
            self._run_job,
            CronTrigger(hour=self._warning_hour, minute=0, timezone="UTC"),
            args=[self.run_warning_sweep],
            id=WARNING_JOB_ID,
            name="Escrow expiry warnings",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info(
            "scheduler.started",
            sweep_interval_minutes=self._sweep_interval_minutes,
            warning_hour_utc=self._warning_hour,
        )

    async def shutdown(self) -> None:
        """Stop the timer and wait for sweeps it started.

        A timer-started sweep in progress stops before its next escrow; the
        rest are picked up by the next run. Sweeps called directly are not
        interrupted.
        """
        if self._scheduler is None:
            return
        self._stopping = True
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._scheduler = None
        if self._jobs:
            await asyncio.gather(*list(self._jobs), return_exceptions=True)
        self._stopping = False
        logger.info("scheduler.stopped")

    async def _run_job(self, sweep: Callable[[], Awaitable[SweepReport]]) -> None:
        task = asyncio.current_task()
        self._jobs.add(task)
        try:
            await sweep()
        except Exception:
            logger.exception("scheduler.sweep_failed", sweep=sweep.__name__)
        finally:
            self._jobs.discard(task)

    def _should_stop(self) -> bool:
        """True inside a timer-started sweep once shutdown has begun."""
        return self._stopping and asyncio.current_task() in self._jobs

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    # ------------------------------------------------------------------
    # Sweeps
    # ------------------------------------------------------------------

    async def run_expiry_sweep(self) -> SweepReport:
        """Auto-cancel expired PENDING escrows and escalate expired ACTIVE ones."""
        now = self._ctx.clock.now()
        report = SweepReport()
        async with self._ctx.session_factory() as session:
            repo = EscrowRepository(session)
            candidates = [
                *await repo.find_expired_ids(EscrowStatus.PENDING, now),
                *await repo.find_expired_ids(EscrowStatus.ACTIVE, now),
            ]

        for escrow_id in candidates:
            if self._should_stop():
                break
            with bound_contextvars(escrow_id=str(escrow_id)):
                try:
                    async with self._ctx.scope(escrow_id) as unit:
                        action = await self._expire(unit, now)
                except Exception:
                    logger.exception("scheduler.escrow_failed", sweep="expiry")
                    report.failed.append(str(escrow_id))
                    continue
            _record(report, action, str(escrow_id))

        logger.info(
            "scheduler.expiry_sweep_complete",
            cancelled=len(report.cancelled),
            escalated=len(report.escalated),
            skipped=len(report.skipped),
            failed=len(report.failed),
        )
        return report

    async def run_warning_sweep(self) -> SweepReport:
        """Warn parties of escrows expiring within the warning window, once."""
        now = self._ctx.clock.now()
        until = now + self._warning_window
        report = SweepReport()
        async with self._ctx.session_factory() as session:
            candidates = await EscrowRepository(session).find_expiring_ids(
                (EscrowStatus.PENDING, EscrowStatus.ACTIVE), now, until
            )

        for escrow_id in candidates:
            if self._should_stop():
                break
            with bound_contextvars(escrow_id=str(escrow_id)):
                try:
                    async with self._ctx.scope(escrow_id) as unit:
                        warned = await self._warn(unit, now, until)
                except Exception:
                    logger.exception("scheduler.escrow_failed", sweep="warning")
                    report.failed.append(str(escrow_id))
                    continue
            (report.warned if warned else report.skipped).append(str(escrow_id))

        logger.info(
            "scheduler.warning_sweep_complete",
            warned=len(report.warned),
            skipped=len(report.skipped),
            failed=len(report.failed),
        )
        return report

    async def process_escrow(self, escrow_id: uuid.UUID | str) -> Escrow:
        """Apply the expiry branch to one escrow right now.

        Raises:
            EscrowNotFoundError: Unknown escrow.
            InvalidStateError: The escrow has no expiry or has not expired.
        """
        now = self._ctx.clock.now()
        async with self._ctx.scope(escrow_id) as unit:
            escrow = unit.escrow
            if escrow.expires_at is None:
                raise InvalidStateError(f"Escrow {escrow.id} has no expiry date")
            if ensure_utc(escrow.expires_at) >= now:
                raise InvalidStateError(f"Escrow {escrow.id} has not expired yet")
            await self._expire(unit, now)
        return escrow

    # ------------------------------------------------------------------
    # Per-escrow actions (run inside the escrow's scope)
    # ------------------------------------------------------------------

    async def _expire(self, unit: EscrowScope, now: datetime) -> str | None:
        escrow = unit.escrow
        if escrow.expires_at is None or ensure_utc(escrow.expires_at) >= now:
            return None
        match EscrowStatus(escrow.status):
            case EscrowStatus.PENDING:
                await self._auto_cancel(unit)
                return "cancelled"
            case EscrowStatus.ACTIVE:
                await self._escalate(unit)
                return "escalated"
            case _:
                logger.info("scheduler.escrow_skipped", status=escrow.status)
                return None

    async def _auto_cancel(self, unit: EscrowScope) -> None:
        escrow = unit.escrow
        unit.transition(EscrowStatus.CANCELLED)
        await unit.log(
            EscrowEventType.AUTO_CANCELLED,
            SYSTEM_ACTOR,
            data={"reason": "EXPIRED_PENDING", "expired_at": escrow.expires_at},
        )
        unit.emit(
            WebhookEvent.ESCROW_AUTO_CANCELLED,
            _notification(
                escrow,
                NotificationType.ESCROW_AUTO_CANCELLED,
                reason="EXPIRED_PENDING",
                expired_at=escrow.expires_at,
            ),
        )
        logger.info("scheduler.escrow_auto_cancelled", escrow_id=str(escrow.id))

    async def _escalate(self, unit: EscrowScope) -> None:
        escrow = unit.escrow
        unit.transition(EscrowStatus.DISPUTED)
        await unit.log(
            EscrowEventType.AUTO_ESCALATED_TO_DISPUTE,
            SYSTEM_ACTOR,
            data={
                "reason": "EXPIRED_ACTIVE",
                "expired_at": escrow.expires_at,
                "requires_arbitration": True,
            },
        )
        unit.emit(
            WebhookEvent.ESCROW_ESCALATED,
            _notification(
                escrow,
                NotificationType.ESCROW_ESCALATED_TO_DISPUTE,
                reason="EXPIRED_ACTIVE",
                expired_at=escrow.expires_at,
                requires_arbitration=True,
            ),
        )
        logger.info("scheduler.escrow_escalated", escrow_id=str(escrow.id))

    async def _warn(self, unit: EscrowScope, now: datetime, until: datetime) -> bool:
        escrow = unit.escrow
        if (
            escrow.status not in (EscrowStatus.PENDING, EscrowStatus.ACTIVE)
            or escrow.expiration_notified_at is not None
            or escrow.expires_at is None
        ):
            return False
        expires_at = ensure_utc(escrow.expires_at)
        if not now < expires_at <= until:
            return False

        hours = math.ceil((expires_at - now).total_seconds() / 3600)
        escrow.expiration_notified_at = now
        await unit.log(
            EscrowEventType.EXPIRATION_WARNING_SENT,
            SYSTEM_ACTOR,
            data={"expires_at": expires_at, "hours_until_expiry": hours},
        )
        unit.emit(
            WebhookEvent.ESCROW_EXPIRING,
            _notification(
                escrow,
                NotificationType.ESCROW_EXPIRING_SOON,
                expires_at=expires_at,
                hours_until_expiry=hours,
            ),
        )
        return True


def _notification(escrow: Escrow, kind: NotificationType, **extra: object) -> dict:
    data = {
        "type": kind,
        "escrow_id": escrow.id,
        "title": escrow.title,
        "status": escrow.status,
        "recipients": party_ids(escrow),
    }
    data.update(extra)
    return data


def _record(report: SweepReport, action: str | None, escrow_id: str) -> None:
    if action == "cancelled":
        report.cancelled.append(escrow_id)
    elif action == "escalated":
        report.escalated.append(escrow_id)
    else:
        report.skipped.append(escrow_id)
