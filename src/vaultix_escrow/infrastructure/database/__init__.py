"""Database infrastructure — engine, ORM models, and repositories."""

from vaultix_escrow.infrastructure.database.engine import (
    build_session_factory,
    close_db,
    get_session_factory,
    init_db,
)
from vaultix_escrow.infrastructure.database.orm_models import (
    Base,
    Condition,
    Dispute,
    Escrow,
    EscrowEvent,
    Party,
    WebhookSubscription,
)
from vaultix_escrow.infrastructure.database.repositories import (
    DisputeRepository,
    EscrowRepository,
    EventRepository,
    WebhookRepository,
)

__all__ = [
    "Base",
    "Condition",
    "Dispute",
    "Escrow",
    "EscrowEvent",
    "Party",
    "WebhookSubscription",
    "DisputeRepository",
    "EscrowRepository",
    "EventRepository",
    "WebhookRepository",
    "build_session_factory",
    "close_db",
    "get_session_factory",
    "init_db",
]
