"""Append-only audit log of escrow events.

Rows are written inside the caller's transaction so an event exists if and
only if the change it describes committed. Subscribers (the event stream for
the surrounding application) are notified only after that commit.
"""

from __future__ import annotations

import inspect
from typing import TYPE_CHECKING, Any

from pydantic_core import to_jsonable_python

from vaultix_escrow.infrastructure.database.repositories import EventRepository
from vaultix_escrow.logging_config import get_logger

if TYPE_CHECKING:
    import uuid
    from collections.abc import Awaitable, Callable, Iterable

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from vaultix_escrow.domain.clock import Clock
    from vaultix_escrow.domain.enums import EscrowEventType
    from vaultix_escrow.infrastructure.database.orm_models import EscrowEvent

    EventSubscriber = Callable[[EscrowEvent], Awaitable[None] | None]

logger = get_logger(__name__)


def to_json_data(data: Any) -> Any:
    """Normalise decimals, datetimes, UUIDs and enums to JSON-safe values."""
    if data is None:
        return None
    return to_jsonable_python(data, fallback=str)


class EventLog:
    """Writes, reads and publishes escrow audit events."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Clock,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock
        self._subscribers: list[EventSubscriber] = []

    async def append(
        self,
        session: AsyncSession,
        escrow_id: uuid.UUID,
        event_type: EscrowEventType,
        actor_id: str | None,
        data: dict | None = None,
        ip_address: str | None = None,
    ) -> EscrowEvent:
        """Record one immutable event in the caller's transaction."""
        entry = await EventRepository(session).record(
            escrow_id=escrow_id,
            event_type=event_type,
            actor_id=actor_id,
            data=to_json_data(data),
            ip_address=ip_address,
            created_at=self._clock.now(),
        )
        logger.debug(
            "event_log.appended",
            escrow_id=str(escrow_id),
            event_type=str(event_type),
            actor_id=actor_id,
        )
        return entry

    async def history(self, escrow_id: uuid.UUID) -> list[EscrowEvent]:
        """All events for an escrow, oldest first."""
        async with self._session_factory() as session:
            return await EventRepository(session).get_by_escrow(escrow_id)

    def subscribe(self, callback: EventSubscriber) -> None:
        """Register a callback invoked with each committed event."""
        self._subscribers.append(callback)

    async def publish(self, entries: Iterable[EscrowEvent]) -> None:
        """Hand committed entries to subscribers.

        A failing subscriber is logged and skipped; it never affects the
        workflow that produced the event.
        """
        for entry in entries:
            for callback in self._subscribers:
                try:
                    result = callback(entry)
                    if inspect.isawaitable(result):
                        await result
                except Exception:
                    logger.exception(
                        "event_log.subscriber_failed",
                        escrow_id=str(entry.escrow_id),
                        event_type=entry.event_type,
                    )
