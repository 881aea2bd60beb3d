"""Shared service dependencies and the per-escrow serialized scope.

Every read -> validate -> write sequence on an escrow runs inside
``EscrowContext.scope(escrow_id)``:

    1. hold the escrow's lock (in-process or Redis)
    2. open a session and begin a transaction
    3. load the escrow row with ``SELECT ... FOR UPDATE``
    4. run the caller's checks and writes
    5. commit, release the lock, then publish collected events and webhooks

A scope that raises rolls back and publishes nothing.
"""

from __future__ import annotations

import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from sqlalchemy import event

from vaultix_escrow.domain.enums import EscrowStatus, PartyRole
from vaultix_escrow.domain.exceptions import EscrowNotFoundError
from vaultix_escrow.domain.state_machine import is_terminal, validate_transition
from vaultix_escrow.infrastructure.database.repositories import EscrowRepository
from vaultix_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from vaultix_escrow.domain.clock import Clock
    from vaultix_escrow.domain.enums import EscrowEventType, WebhookEvent
    from vaultix_escrow.domain.ledger_protocol import LedgerService
    from vaultix_escrow.infrastructure.database.orm_models import Escrow, EscrowEvent
    from vaultix_escrow.infrastructure.locks import EscrowLocks
    from vaultix_escrow.services.event_log import EventLog
    from vaultix_escrow.services.webhook_dispatcher import WebhookDispatcher

logger = get_logger(__name__)

SYSTEM_ACTOR = "SYSTEM"


def coerce_id(escrow_id: uuid.UUID | str) -> uuid.UUID:
    """Parse an escrow id; malformed ids are reported as not found."""
    if isinstance(escrow_id, uuid.UUID):
        return escrow_id
    try:
        return uuid.UUID(str(escrow_id))
    except ValueError as err:
        raise EscrowNotFoundError(str(escrow_id)) from err


def stamp_updates(session: AsyncSession, clock: Clock) -> None:
    """Set ``updated_at`` from ``clock`` on every row modified in ``session``."""

    def _before_flush(sync_session, flush_context, instances) -> None:  # noqa: ANN001
        now = clock.now()
        for obj in sync_session.dirty:
            if hasattr(obj, "updated_at") and sync_session.is_modified(obj):
                obj.updated_at = now

    event.listen(session.sync_session, "before_flush", _before_flush)


def roles_of(escrow: Escrow, user_id: str) -> set[PartyRole]:
    """Roles ``user_id`` holds on ``escrow``."""
    return {PartyRole(p.role) for p in escrow.parties if p.user_id == user_id}


def party_ids(escrow: Escrow) -> list[str]:
    """Distinct user ids of the creator and every party, creator first."""
    ids = [escrow.creator_id]
    for party in escrow.parties:
        if party.user_id not in ids:
            ids.append(party.user_id)
    return ids


def escrow_payload(escrow: Escrow, **extra: object) -> dict:
    """Webhook data describing an escrow."""
    payload = {
        "escrow_id": escrow.id,
        "title": escrow.title,
        "status": escrow.status,
        "amount": escrow.amount,
        "asset": escrow.asset,
        "creator_id": escrow.creator_id,
    }
    payload.update(extra)
    return payload


@dataclass
class EscrowScope:
    """The unit of work handed to code running under an escrow's lock."""

    context: EscrowContext
    session: AsyncSession
    escrow: Escrow | None = None
    events: list[EscrowEvent] = field(default_factory=list)
    webhooks: list[tuple[WebhookEvent, dict]] = field(default_factory=list)

    def now(self) -> datetime:
        return self.context.clock.now()

    async def log(
        self,
        event_type: EscrowEventType,
        actor_id: str | None,
        data: dict | None = None,
        ip_address: str | None = None,
    ) -> EscrowEvent:
        """Append an audit event for this scope's escrow."""
        entry = await self.context.event_log.append(
            self.session,
            self.escrow.id,
            event_type,
            actor_id,
            data=data,
            ip_address=ip_address,
        )
        self.events.append(entry)
        return entry

    def emit(self, event: WebhookEvent, data: dict) -> None:
        """Queue a webhook to be dispatched once the scope commits."""
        self.webhooks.append((event, data))

    def transition(self, target: EscrowStatus) -> EscrowStatus:
        """Move the escrow to ``target`` through the transition table."""
        new_status = validate_transition(self.escrow.status, target)
        self.escrow.status = new_status.value
        if is_terminal(new_status):
            self.escrow.is_active = False
        return new_status


@dataclass
class EscrowContext:
    """Dependencies shared by the engine, tracker, resolver and scheduler."""

    session_factory: async_sessionmaker[AsyncSession]
    locks: EscrowLocks
    event_log: EventLog
    dispatcher: WebhookDispatcher
    ledger: LedgerService
    clock: Clock
    default_asset: str = "XLM"
    ledger_max_attempts: int = 3
    ledger_backoff_base: float = 1.0
    ledger_backoff_max: float = 10.0

    @asynccontextmanager
    async def scope(self, escrow_id: uuid.UUID | str) -> AsyncIterator[EscrowScope]:
        """Serialized, transactional access to one existing escrow."""
        key = coerce_id(escrow_id)
        async with self.locks.hold(str(key)):
            async with self.session_factory() as session, session.begin():
                stamp_updates(session, self.clock)
                escrow = await EscrowRepository(session).get_for_update(key)
                if escrow is None:
                    raise EscrowNotFoundError(str(key))
                unit = EscrowScope(context=self, session=session, escrow=escrow)
                yield unit
        await self.publish(unit)

    @asynccontextmanager
    async def new_escrow_scope(self) -> AsyncIterator[EscrowScope]:
        """Transactional scope for an escrow that does not exist yet.

        No lock is needed: nobody else can reference the id before commit.
        """
        async with self.session_factory() as session, session.begin():
            stamp_updates(session, self.clock)
            unit = EscrowScope(context=self, session=session)
            yield unit
        await self.publish(unit)

    async def publish(self, unit: EscrowScope) -> None:
        """Fan committed events out to subscribers and webhooks."""
        await self.event_log.publish(unit.events)
        for event, data in unit.webhooks:
            try:
                await self.dispatcher.dispatch(event, data)
            except Exception:
                logger.exception(
                    "webhook.dispatch_failed",
                    webhook_event=str(event),
                    escrow_id=str(unit.escrow.id) if unit.escrow else None,
                )
