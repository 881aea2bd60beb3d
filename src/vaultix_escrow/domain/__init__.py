"""Domain layer — pure business logic with zero framework dependencies."""

from vaultix_escrow.domain.clock import Clock, ManualClock, SystemClock
from vaultix_escrow.domain.enums import (
    ConditionType,
    DisputeOutcome,
    DisputeStatus,
    EscrowEventType,
    EscrowStatus,
    EscrowType,
    NotificationType,
    PartyRole,
    WebhookEvent,
)
from vaultix_escrow.domain.exceptions import (
    ConflictError,
    EscrowError,
    EscrowNotFoundError,
    ForbiddenError,
    InvalidStateError,
    InvalidStateTransitionError,
    LedgerError,
    NotFoundError,
    UnprocessableEntityError,
    ValidationError,
)
from vaultix_escrow.domain.ledger_protocol import LedgerService, SettlementReceipt
from vaultix_escrow.domain.state_machine import (
    EscrowStateMachine,
    can_transition,
    is_terminal,
    validate_transition,
)

__all__ = [
    "Clock",
    "ManualClock",
    "SystemClock",
    "ConditionType",
    "DisputeOutcome",
    "DisputeStatus",
    "EscrowEventType",
    "EscrowStatus",
    "EscrowType",
    "NotificationType",
    "PartyRole",
    "WebhookEvent",
    "ConflictError",
    "EscrowError",
    "EscrowNotFoundError",
    "ForbiddenError",
    "InvalidStateError",
    "InvalidStateTransitionError",
    "LedgerError",
    "NotFoundError",
    "UnprocessableEntityError",
    "ValidationError",
    "LedgerService",
    "SettlementReceipt",
    "EscrowStateMachine",
    "can_transition",
    "is_terminal",
    "validate_transition",
]
