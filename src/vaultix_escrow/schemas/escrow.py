"""Pydantic schemas for escrow inputs.

These schemas define the shapes the surrounding application hands to the
workflow engine. They are separate from the ORM models to maintain clean
boundaries between callers and the database layer.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from vaultix_escrow.domain.clock import ensure_utc
from vaultix_escrow.domain.enums import ConditionType, EscrowType, PartyRole


class PartySpec(BaseModel):
    """A user and the role they hold on the escrow."""

    model_config = ConfigDict(frozen=True)

    user_id: str = Field(..., min_length=1, max_length=64)
    role: PartyRole


class ConditionSpec(BaseModel):
    """A release criterion attached to an escrow."""

    description: str = Field(..., min_length=1, max_length=1000)
    type: ConditionType = ConditionType.MANUAL
    metadata: dict | None = None


class CreateEscrowSpec(BaseModel):
    """Input for creating a new escrow."""

    title: str = Field(..., min_length=1, max_length=255)
    description: str | None = Field(default=None, max_length=2000)
    amount: Decimal = Field(
        ...,
        gt=0,
        max_digits=18,
        decimal_places=7,
        description="Escrowed amount in units of ``asset``",
        examples=["100.5"],
    )
    asset: str | None = Field(
        default=None,
        min_length=1,
        max_length=12,
        description="Asset code; the configured default asset when omitted",
    )
    type: EscrowType = EscrowType.STANDARD
    parties: list[PartySpec] = Field(..., min_length=1)
    conditions: list[ConditionSpec] = Field(default_factory=list)
    expires_at: datetime | None = None

    @field_validator("expires_at")
    @classmethod
    def _expires_at_utc(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value) if value is not None else None


class UpdateEscrowPatch(BaseModel):
    """Partial update allowed while an escrow is PENDING."""

    title: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = Field(default=None, max_length=2000)
    expires_at: datetime | None = None

    @field_validator("expires_at")
    @classmethod
    def _expires_at_utc(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value) if value is not None else None
