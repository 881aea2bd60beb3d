"""Domain enumerations for the escrow lifecycle core.

These enums define the canonical states and types used throughout the system.
They are framework-agnostic (no SQLAlchemy, no pydantic imports).
"""

import enum


class EscrowStatus(enum.StrEnum):
    """Lifecycle states of an escrow.

    State transitions are enforced by the EscrowStateMachine guard.
    See domain/state_machine.py for the transition table.
    """

    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    DISPUTED = "DISPUTED"


class EscrowType(enum.StrEnum):
    STANDARD = "STANDARD"
    MILESTONE = "MILESTONE"
    TIMED = "TIMED"


class PartyRole(enum.StrEnum):
    """Role a user holds on a single escrow.

    Role-gated operations match on this enum exhaustively.
    """

    BUYER = "BUYER"
    SELLER = "SELLER"
    ARBITRATOR = "ARBITRATOR"


class ConditionType(enum.StrEnum):
    MANUAL = "MANUAL"
    TIME_BASED = "TIME_BASED"
    ORACLE = "ORACLE"


class DisputeStatus(enum.StrEnum):
    OPEN = "OPEN"
    UNDER_REVIEW = "UNDER_REVIEW"
    RESOLVED = "RESOLVED"


class DisputeOutcome(enum.StrEnum):
    RELEASED_TO_SELLER = "RELEASED_TO_SELLER"
    REFUNDED_TO_BUYER = "REFUNDED_TO_BUYER"
    SPLIT = "SPLIT"


class EscrowEventType(enum.StrEnum):
    """Types of audit events recorded in the escrow_events table.

    This is the append-only history of an escrow. Every status change
    produces exactly one event.
    """

    # Lifecycle events
    CREATED = "CREATED"
    UPDATED = "UPDATED"
    FUNDED = "FUNDED"
    CANCELLED = "CANCELLED"
    COMPLETED = "COMPLETED"

    # Condition events
    CONDITION_ADDED = "CONDITION_ADDED"
    CONDITION_FULFILLED = "CONDITION_FULFILLED"
    CONDITION_MET = "CONDITION_MET"

    # Dispute events
    DISPUTE_FILED = "DISPUTE_FILED"
    DISPUTE_UNDER_REVIEW = "DISPUTE_UNDER_REVIEW"
    DISPUTE_RESOLVED = "DISPUTE_RESOLVED"

    # Scheduler events
    AUTO_CANCELLED = "AUTO_CANCELLED"
    AUTO_ESCALATED_TO_DISPUTE = "AUTO_ESCALATED_TO_DISPUTE"
    EXPIRATION_WARNING_SENT = "EXPIRATION_WARNING_SENT"


class WebhookEvent(enum.StrEnum):
    """Event names a webhook subscription can listen to."""

    ESCROW_CREATED = "escrow.created"
    ESCROW_UPDATED = "escrow.updated"
    ESCROW_FUNDED = "escrow.funded"
    ESCROW_RELEASED = "escrow.released"
    ESCROW_CANCELLED = "escrow.cancelled"
    ESCROW_DISPUTED = "escrow.disputed"
    ESCROW_RESOLVED = "escrow.resolved"
    CONDITION_FULFILLED = "condition.fulfilled"
    CONDITION_CONFIRMED = "condition.confirmed"

    # Party notifications raised by the expiry scheduler
    ESCROW_AUTO_CANCELLED = "escrow.auto_cancelled"
    ESCROW_ESCALATED = "escrow.escalated"
    ESCROW_EXPIRING = "escrow.expiring"


class NotificationType(enum.StrEnum):
    """Party-facing notification kinds carried in scheduler webhooks."""

    ESCROW_AUTO_CANCELLED = "ESCROW_AUTO_CANCELLED"
    ESCROW_ESCALATED_TO_DISPUTE = "ESCROW_ESCALATED_TO_DISPUTE"
    ESCROW_EXPIRING_SOON = "ESCROW_EXPIRING_SOON"
