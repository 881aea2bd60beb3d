"""Repository classes for database access.

Repositories encapsulate all SQL queries and provide a clean interface
to the service layer. They accept an AsyncSession and never manage
their own transactions (that's the caller's responsibility).
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy import delete, or_, select

from vaultix_escrow.infrastructure.database.orm_models import (
    Dispute,
    Escrow,
    EscrowEvent,
    Party,
    WebhookSubscription,
)

if TYPE_CHECKING:
    import uuid
    from collections.abc import Iterable
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession

    from vaultix_escrow.domain.enums import EscrowEventType, EscrowStatus, PartyRole


class EscrowRepository:
    """Data access for escrows and their owned parties/conditions."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, escrow: Escrow) -> Escrow:
        """Insert a new escrow together with its parties and conditions."""
        self._session.add(escrow)
        await self._session.flush()
        return escrow

    async def get_by_id(self, escrow_id: uuid.UUID) -> Escrow | None:
        """Fetch an escrow by its UUID."""
        result = await self._session.execute(select(Escrow).where(Escrow.id == escrow_id))
        return result.scalar_one_or_none()

    async def get_for_update(self, escrow_id: uuid.UUID) -> Escrow | None:
        """Fetch an escrow and take a row-level lock until the transaction ends.

        ``FOR UPDATE`` is emitted on PostgreSQL; SQLite ignores it and relies
        on the in-process escrow lock instead.
        """
        result = await self._session.execute(
            select(Escrow)
            .where(Escrow.id == escrow_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_for_user(
        self,
        user_id: str,
        status: EscrowStatus | None = None,
        role: PartyRole | None = None,
        offset: int = 0,
        limit: int = 10,
    ) -> list[Escrow]:
        """Escrows the user created or holds a role on, newest first."""
        membership = select(Party.escrow_id).where(Party.user_id == user_id)
        if role is not None:
            stmt = select(Escrow).where(Escrow.id.in_(membership.where(Party.role == role.value)))
        else:
            stmt = select(Escrow).where(
                or_(Escrow.creator_id == user_id, Escrow.id.in_(membership))
            )
        if status is not None:
            stmt = stmt.where(Escrow.status == status.value)
        result = await self._session.execute(
            stmt.order_by(Escrow.created_at.desc()).offset(offset).limit(limit)
        )
        return list(result.scalars().all())

    async def find_expired_ids(
        self,
        status: EscrowStatus,
        now: datetime,
    ) -> list[uuid.UUID]:
        """IDs of active-flagged escrows in ``status`` whose expiry has passed."""
        result = await self._session.execute(
            select(Escrow.id)
            .where(
                Escrow.status == status.value,
                Escrow.is_active.is_(True),
                Escrow.expires_at.is_not(None),
                Escrow.expires_at < now,
            )
            .order_by(Escrow.expires_at.asc())
        )
        return list(result.scalars().all())

    async def find_expiring_ids(
        self,
        statuses: Iterable[EscrowStatus],
        now: datetime,
        until: datetime,
    ) -> list[uuid.UUID]:
        """IDs of un-warned escrows expiring in the window ``(now, until]``."""
        result = await self._session.execute(
            select(Escrow.id)
            .where(
                Escrow.status.in_([s.value for s in statuses]),
                Escrow.is_active.is_(True),
                Escrow.expiration_notified_at.is_(None),
                Escrow.expires_at > now,
                Escrow.expires_at <= until,
            )
            .order_by(Escrow.expires_at.asc())
        )
        return list(result.scalars().all())


class DisputeRepository:
    """Data access for disputes (one per escrow)."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, dispute: Dispute) -> Dispute:
        self._session.add(dispute)
        await self._session.flush()
        return dispute

    async def get_by_escrow(self, escrow_id: uuid.UUID) -> Dispute | None:
        result = await self._session.execute(
            select(Dispute).where(Dispute.escrow_id == escrow_id)
        )
        return result.scalar_one_or_none()


class EventRepository:
    """Data access for the append-only audit event log."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record(
        self,
        escrow_id: uuid.UUID,
        event_type: EscrowEventType,
        actor_id: str | None,
        data: dict | None,
        ip_address: str | None,
        created_at: datetime,
    ) -> EscrowEvent:
        """Append a new audit event. This is the ONLY write operation allowed."""
        evt = EscrowEvent(
            escrow_id=escrow_id,
            event_type=event_type.value,
            actor_id=actor_id,
            data=data,
            ip_address=ip_address,
            created_at=created_at,
        )
        self._session.add(evt)
        await self._session.flush()
        return evt

    async def get_by_escrow(self, escrow_id: uuid.UUID) -> list[EscrowEvent]:
        """Fetch all events for an escrow in chronological order."""
        result = await self._session.execute(
            select(EscrowEvent)
            .where(EscrowEvent.escrow_id == escrow_id)
            .order_by(EscrowEvent.created_at.asc(), EscrowEvent.id.asc())
        )
        return list(result.scalars().all())


class WebhookRepository:
    """Data access for webhook subscriptions."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, subscription: WebhookSubscription) -> WebhookSubscription:
        self._session.add(subscription)
        await self._session.flush()
        return subscription

    async def get_by_id(self, subscription_id: uuid.UUID) -> WebhookSubscription | None:
        result = await self._session.execute(
            select(WebhookSubscription).where(WebhookSubscription.id == subscription_id)
        )
        return result.scalar_one_or_none()

    async def list_active(self) -> list[WebhookSubscription]:
        result = await self._session.execute(
            select(WebhookSubscription)
            .where(WebhookSubscription.is_active.is_(True))
            .order_by(WebhookSubscription.created_at.asc())
        )
        return list(result.scalars().all())

    async def list_for_user(self, user_id: str) -> list[WebhookSubscription]:
        result = await self._session.execute(
            select(WebhookSubscription)
            .where(WebhookSubscription.user_id == user_id)
            .order_by(WebhookSubscription.created_at.asc())
        )
        return list(result.scalars().all())

    async def delete(self, subscription: WebhookSubscription) -> None:
        await self._session.execute(
            delete(WebhookSubscription).where(WebhookSubscription.id == subscription.id)
        )
