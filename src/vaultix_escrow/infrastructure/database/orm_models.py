"""SQLAlchemy 2.0 ORM models for the escrow lifecycle core.

Six tables:
    1. escrows                — The escrow agreements (aggregate root).
    2. escrow_parties         — Role of a user on one escrow (owned by escrows).
    3. escrow_conditions      — Release criteria (owned by escrows).
    4. disputes               — At most one per escrow, looked up by escrow_id.
    5. escrow_events          — Append-only audit log.
    6. webhook_subscriptions  — Subscriber endpoints, independent of escrows.

Design decisions:
    - UUIDs as primary keys, except escrow_events which uses a monotonically
      increasing integer so events with equal timestamps keep insert order.
    - Decimal for amounts (no floating point rounding errors).
    - Escrow owns its parties and conditions through one-directional
      collections. Children, disputes and events reference the escrow by id
      only; there are no live back-references.
    - CHECK constraints mirror the domain invariants (status values,
      released => completed, met => fulfilled).
    - JSON columns become JSONB on PostgreSQL.
    - updated_at is stamped from the injected clock when a unit of work
      commits (services/context.py), not by the database or a flush hook.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from decimal import Decimal  # noqa: TC003 - needed at runtime by SQLAlchemy Mapped[]

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

JSONType = JSON().with_variant(JSONB(), "postgresql")
EventIdType = BigInteger().with_variant(Integer(), "sqlite")


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def _utcnow() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# 1. escrows
# ---------------------------------------------------------------------------
class Escrow(Base):
    """An agreement to hold ``amount`` of ``asset`` until conditions are met."""

    __tablename__ = "escrows"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    # --- Agreement ---
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    amount: Mapped[Decimal] = mapped_column(
        Numeric(18, 7),
        nullable=False,
        comment="Escrowed amount (7 decimal precision)",
    )
    asset: Mapped[str] = mapped_column(String(12), nullable=False, default="XLM")
    type: Mapped[str] = mapped_column(String(20), nullable=False, default="STANDARD")

    # --- Status (Enum-guarded) ---
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="PENDING",
        comment="Current lifecycle state (guarded by EscrowStateMachine)",
    )
    creator_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        comment="User who created the escrow (the paying buyer)",
    )

    # --- Expiry ---
    expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, default=None
    )
    expiration_notified_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, default=None
    )

    # --- Settlement ---
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_released: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    release_transaction_hash: Mapped[str | None] = mapped_column(
        String(128),
        nullable=True,
        default=None,
        comment="Ledger transaction hash of the release",
    )
    funding_transaction_hash: Mapped[str | None] = mapped_column(
        String(128),
        nullable=True,
        default=None,
        comment="Ledger transaction hash of the funding, when reported",
    )

    # --- Timestamps ---
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    # --- Owned children ---
    parties: Mapped[list[Party]] = relationship(
        "Party",
        cascade="all, delete-orphan",
        order_by="Party.created_at.asc()",
        lazy="selectin",
    )
    conditions: Mapped[list[Condition]] = relationship(
        "Condition",
        cascade="all, delete-orphan",
        order_by="Condition.position.asc()",
        lazy="selectin",
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('PENDING', 'ACTIVE', 'COMPLETED', 'CANCELLED', 'DISPUTED')",
            name="ck_escrow_valid_status",
        ),
        CheckConstraint("amount > 0", name="ck_escrow_positive_amount"),
        CheckConstraint(
            "NOT is_released OR status = 'COMPLETED'",
            name="ck_escrow_released_is_completed",
        ),
        Index("idx_escrow_status", "status"),
        Index("idx_escrow_creator", "creator_id"),
        Index("idx_escrow_expires_at", "expires_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<Escrow id={self.id} status={self.status} "
            f"amount={self.amount} {self.asset}>"
        )


# ---------------------------------------------------------------------------
# 2. escrow_parties
# ---------------------------------------------------------------------------
class Party(Base):
    """A user's role on one escrow. Immutable once created."""

    __tablename__ = "escrow_parties"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    escrow_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("escrows.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    role: Mapped[str] = mapped_column(String(20), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        UniqueConstraint("escrow_id", "user_id", "role", name="uq_party_role"),
        CheckConstraint(
            "role IN ('BUYER', 'SELLER', 'ARBITRATOR')", name="ck_party_valid_role"
        ),
        Index("idx_party_user", "user_id"),
    )

    def __repr__(self) -> str:
        return f"<Party escrow={self.escrow_id} user={self.user_id} role={self.role}>"


# ---------------------------------------------------------------------------
# 3. escrow_conditions
# ---------------------------------------------------------------------------
class Condition(Base):
    """A release criterion: fulfilled by the seller, confirmed by the buyer."""

    __tablename__ = "escrow_conditions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    escrow_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("escrows.id", ondelete="CASCADE"), nullable=False
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    type: Mapped[str] = mapped_column(String(20), nullable=False, default="MANUAL")
    metadata_json: Mapped[dict | None] = mapped_column(
        "metadata", JSONType, nullable=True, default=None
    )

    # --- Seller attestation ---
    is_fulfilled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    fulfilled_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, default=None
    )
    fulfilled_by_user_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    fulfillment_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    fulfillment_evidence: Mapped[str | None] = mapped_column(Text, nullable=True)

    # --- Buyer confirmation ---
    is_met: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    met_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, default=None
    )
    met_by_user_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        CheckConstraint("NOT is_met OR is_fulfilled", name="ck_condition_met_is_fulfilled"),
        Index("idx_condition_escrow", "escrow_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<Condition id={self.id} fulfilled={self.is_fulfilled} met={self.is_met}>"
        )


# ---------------------------------------------------------------------------
# 4. disputes
# ---------------------------------------------------------------------------
class Dispute(Base):
    """Arbitrated disagreement over an escrow. At most one per escrow."""

    __tablename__ = "disputes"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    escrow_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("escrows.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    filed_by_user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    evidence: Mapped[list | None] = mapped_column(
        JSONType,
        nullable=True,
        default=None,
        comment="URLs or reference strings pointing to supporting evidence",
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="OPEN")

    # --- Resolution ---
    outcome: Mapped[str | None] = mapped_column(String(30), nullable=True)
    seller_percent: Mapped[Decimal | None] = mapped_column(Numeric(5, 2), nullable=True)
    buyer_percent: Mapped[Decimal | None] = mapped_column(Numeric(5, 2), nullable=True)
    resolution_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolved_by_user_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('OPEN', 'UNDER_REVIEW', 'RESOLVED')",
            name="ck_dispute_valid_status",
        ),
    )

    def __repr__(self) -> str:
        return f"<Dispute escrow={self.escrow_id} status={self.status} outcome={self.outcome}>"


# ---------------------------------------------------------------------------
# 5. escrow_events (Append-Only Audit Log)
# ---------------------------------------------------------------------------
class EscrowEvent(Base):
    """Immutable audit record of everything that happens to an escrow.

    This table is APPEND-ONLY. No UPDATE or DELETE operations are permitted
    at the application level.
    """

    __tablename__ = "escrow_events"

    id: Mapped[int] = mapped_column(EventIdType, primary_key=True, autoincrement=True)
    escrow_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("escrows.id", ondelete="CASCADE"), nullable=False
    )
    event_type: Mapped[str] = mapped_column(String(40), nullable=False)
    actor_id: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
        comment="Who triggered this event (user id or SYSTEM)",
    )
    data: Mapped[dict | None] = mapped_column(JSONType, nullable=True, default=None)
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        Index("idx_event_escrow", "escrow_id"),
        Index("idx_event_type", "event_type"),
    )

    def __repr__(self) -> str:
        return f"<EscrowEvent id={self.id} escrow={self.escrow_id} type={self.event_type}>"


# ---------------------------------------------------------------------------
# 6. webhook_subscriptions
# ---------------------------------------------------------------------------
class WebhookSubscription(Base):
    """A subscriber endpoint that receives signed lifecycle notifications."""

    __tablename__ = "webhook_subscriptions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    url: Mapped[str] = mapped_column(String(2048), nullable=False)
    secret: Mapped[str] = mapped_column(String(255), nullable=False)
    events: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        Index("idx_webhook_user", "user_id"),
        Index("idx_webhook_active", "is_active"),
    )

    def __repr__(self) -> str:
        return f"<WebhookSubscription id={self.id} url={self.url} active={self.is_active}>"

