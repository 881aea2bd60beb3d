"""Wiring and lifecycle for the escrow lifecycle core.

Lifecycle:
    1. Startup: Initialize logging, database, optional Redis locks, build the
       services and start the expiry scheduler.
    2. Running: The surrounding application calls the services on ``core``.
    3. Shutdown: Stop the scheduler, drain webhook deliveries, then close
       Redis and the database.

Usage:
    async with core_lifespan() as core:
        escrow = await core.engine.create(spec, creator_id="user-1")
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING

from vaultix_escrow.config import get_settings
from vaultix_escrow.domain.clock import SystemClock
from vaultix_escrow.infrastructure.locks import InProcessEscrowLocks
from vaultix_escrow.logging_config import get_logger, setup_logging
from vaultix_escrow.services.condition_tracker import ConditionTracker
from vaultix_escrow.services.context import EscrowContext
from vaultix_escrow.services.dispute_resolver import DisputeResolver
from vaultix_escrow.services.event_log import EventLog
from vaultix_escrow.services.expiry_scheduler import ExpiryScheduler
from vaultix_escrow.services.ledger_service import build_ledger_service
from vaultix_escrow.services.webhook_dispatcher import WebhookDispatcher
from vaultix_escrow.services.webhook_subscriptions import WebhookSubscriptionService
from vaultix_escrow.services.workflow_engine import EscrowWorkflowEngine

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    import httpx
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from vaultix_escrow.config import Settings
    from vaultix_escrow.domain.clock import Clock
    from vaultix_escrow.domain.ledger_protocol import LedgerService
    from vaultix_escrow.infrastructure.locks import EscrowLocks


@dataclass
class EscrowCore:
    """Everything the surrounding application talks to."""

    context: EscrowContext
    engine: EscrowWorkflowEngine
    conditions: ConditionTracker
    disputes: DisputeResolver
    scheduler: ExpiryScheduler
    dispatcher: WebhookDispatcher
    subscriptions: WebhookSubscriptionService

    @property
    def event_log(self) -> EventLog:
        return self.context.event_log


def build_core(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    settings: Settings | None = None,
    ledger: LedgerService | None = None,
    locks: EscrowLocks | None = None,
    clock: Clock | None = None,
    http_client: httpx.AsyncClient | None = None,
    dispatcher: WebhookDispatcher | None = None,
) -> EscrowCore:
    """Assemble the services from settings, with optional overrides."""
    if settings is None:
        settings = get_settings()
    if clock is None:
        clock = SystemClock()
    if locks is None:
        locks = InProcessEscrowLocks()
    if dispatcher is None:
        dispatcher = WebhookDispatcher(
            session_factory,
            http_client,
            timeout=settings.webhook_timeout_seconds,
            max_attempts=settings.webhook_max_attempts,
            backoff_base=settings.webhook_backoff_base_seconds,
            max_concurrency_per_subscription=settings.webhook_max_concurrency_per_subscription,
            signature_header=settings.webhook_signature_header,
            clock=clock,
        )
    context = EscrowContext(
        session_factory=session_factory,
        locks=locks,
        event_log=EventLog(session_factory, clock),
        dispatcher=dispatcher,
        ledger=ledger or build_ledger_service(),
        clock=clock,
        default_asset=settings.default_asset,
        ledger_max_attempts=settings.ledger_max_attempts,
        ledger_backoff_base=settings.ledger_backoff_base_seconds,
        ledger_backoff_max=settings.ledger_backoff_max_seconds,
    )
    engine = EscrowWorkflowEngine(context)
    return EscrowCore(
        context=context,
        engine=engine,
        conditions=ConditionTracker(context, engine),
        disputes=DisputeResolver(context),
        scheduler=ExpiryScheduler(
            context,
            warning_window_hours=settings.expiry_warning_window_hours,
            sweep_interval_minutes=settings.expiry_sweep_interval_minutes,
            warning_hour=settings.warning_sweep_hour,
        ),
        dispatcher=dispatcher,
        subscriptions=WebhookSubscriptionService(session_factory, clock),
    )


@asynccontextmanager
async def core_lifespan(
    ledger: LedgerService | None = None,
    clock: Clock | None = None,
) -> AsyncGenerator[EscrowCore, None]:
    """Manage startup and shutdown of the escrow core."""
    settings = get_settings()

    # 1. Setup structured logging
    setup_logging(
        log_level=settings.app_log_level,
        json_logs=not settings.is_development,
    )
    logger = get_logger(__name__)
    logger.info("core.starting", env=settings.app_env, ledger_mode=settings.ledger_mode)

    # 2. Initialize database
    from vaultix_escrow.infrastructure.database.engine import (
        close_db,
        get_session_factory,
        init_db,
    )

    await init_db()

    # 3. Initialize Redis for cross-process escrow locks
    from vaultix_escrow.infrastructure.redis_client import (
        RedisEscrowLocks,
        close_redis,
        init_redis,
    )

    locks = None
    if settings.use_redis_locks:
        redis = await init_redis()
        locks = RedisEscrowLocks(redis, timeout=settings.escrow_lock_timeout_seconds)

    core = build_core(
        get_session_factory(),
        settings=settings,
        ledger=ledger,
        locks=locks,
        clock=clock,
    )
    if settings.scheduler_enabled:
        core.scheduler.start()

    logger.info("core.started", redis_locks=settings.use_redis_locks)

    try:
        yield core
    finally:
        # Shutdown
        logger.info("core.shutting_down")
        await core.scheduler.shutdown()
        await core.dispatcher.aclose()
        ledger_close = getattr(core.context.ledger, "aclose", None)
        if ledger_close is not None:
            await ledger_close()
        await close_redis()
        await close_db()
        logger.info("core.stopped")
