"""Dispute Resolver: filing by a party, resolution by an arbitrator.

Outcome -> escrow status:
    RELEASED_TO_SELLER  -> COMPLETED
    SPLIT               -> COMPLETED
    REFUNDED_TO_BUYER   -> CANCELLED

An escrow escalated by the expiry scheduler is DISPUTED without a dispute
record. The arbitrator works on it the same way: a system-filed record is
created the first time the dispute is reviewed or resolved.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, assert_never

from vaultix_escrow.domain.enums import (
    DisputeOutcome,
    DisputeStatus,
    EscrowEventType,
    EscrowStatus,
    PartyRole,
    WebhookEvent,
)
from vaultix_escrow.domain.exceptions import (
    DisputeConflictError,
    DisputeNotFoundError,
    ForbiddenError,
    InvalidStateError,
    UnprocessableEntityError,
    ValidationError,
)
from vaultix_escrow.infrastructure.database.orm_models import Dispute
from vaultix_escrow.infrastructure.database.repositories import DisputeRepository
from vaultix_escrow.logging_config import get_logger
from vaultix_escrow.services.context import (
    SYSTEM_ACTOR,
    coerce_id,
    escrow_payload,
    roles_of,
)

if TYPE_CHECKING:
    import uuid

    from vaultix_escrow.services.context import EscrowContext, EscrowScope

logger = get_logger(__name__)

ESCALATION_REASON = "EXPIRED_ACTIVE"
HUNDRED = Decimal(100)
AMOUNT_QUANTUM = Decimal("0.0000001")


class DisputeResolver:
    """Files, reviews and resolves escrow disputes."""

    def __init__(self, context: EscrowContext) -> None:
        self._ctx = context

    async def file_dispute(
        self,
        escrow_id: uuid.UUID | str,
        user_id: str,
        reason: str,
        evidence: list[str] | None = None,
    ) -> Dispute:
        """A buyer or seller disputes an ACTIVE escrow."""
        if not reason or not reason.strip():
            raise ValidationError("A dispute needs a reason")
        if evidence is not None and not all(isinstance(item, str) for item in evidence):
            raise ValidationError("Dispute evidence must be a list of reference strings")

        async with self._ctx.scope(escrow_id) as unit:
            escrow = unit.escrow
            roles = roles_of(escrow, user_id)
            if not any(_may_file(role) for role in roles):
                raise ForbiddenError("Only the buyer or seller can file a dispute")

            repo = DisputeRepository(unit.session)
            if await repo.get_by_escrow(escrow.id) is not None:
                raise DisputeConflictError(f"A dispute already exists for escrow {escrow.id}")
            if escrow.status != EscrowStatus.ACTIVE:
                raise InvalidStateError(
                    f"Only ACTIVE escrows can be disputed (current: {escrow.status})"
                )

            unit.transition(EscrowStatus.DISPUTED)
            now = unit.now()
            dispute = await repo.create(
                Dispute(
                    escrow_id=escrow.id,
                    filed_by_user_id=user_id,
                    reason=reason,
                    evidence=list(evidence or []),
                    status=DisputeStatus.OPEN.value,
                    created_at=now,
                    updated_at=now,
                )
            )

            await unit.log(
                EscrowEventType.DISPUTE_FILED,
                user_id,
                data={"dispute_id": dispute.id, "reason": reason, "evidence": dispute.evidence},
            )
            unit.emit(
                WebhookEvent.ESCROW_DISPUTED,
                escrow_payload(escrow, dispute_id=dispute.id, reason=reason, filed_by=user_id),
            )

        logger.info("dispute.filed", escrow_id=str(escrow.id), by=user_id)
        return dispute

    async def get_dispute(self, escrow_id: uuid.UUID | str) -> Dispute:
        """The escrow's dispute, or DisputeNotFoundError."""
        key = coerce_id(escrow_id)
        async with self._ctx.session_factory() as session:
            dispute = await DisputeRepository(session).get_by_escrow(key)
        if dispute is None:
            raise DisputeNotFoundError(str(key))
        return dispute

    async def begin_review(self, escrow_id: uuid.UUID | str, arbitrator_id: str) -> Dispute:
        """Move an OPEN dispute to UNDER_REVIEW. Idempotent."""
        async with self._ctx.scope(escrow_id) as unit:
            _require_arbitrator(unit, arbitrator_id)
            dispute = await self._dispute_for(unit)
            if dispute.status == DisputeStatus.RESOLVED:
                raise DisputeConflictError("Dispute is already resolved")
            if dispute.status == DisputeStatus.UNDER_REVIEW:
                return dispute

            dispute.status = DisputeStatus.UNDER_REVIEW.value
            await unit.log(
                EscrowEventType.DISPUTE_UNDER_REVIEW,
                arbitrator_id,
                data={"dispute_id": dispute.id},
            )

        logger.info("dispute.under_review", escrow_id=str(dispute.escrow_id), by=arbitrator_id)
        return dispute

    async def resolve_dispute(
        self,
        escrow_id: uuid.UUID | str,
        arbitrator_id: str,
        outcome: DisputeOutcome | str,
        notes: str | None = None,
        seller_percent: Decimal | float | str | None = None,
        buyer_percent: Decimal | float | str | None = None,
    ) -> Dispute:
        """Settle a dispute and move the escrow to its terminal status.

        Raises:
            ForbiddenError: Caller is not an assigned arbitrator.
            DisputeConflictError: The dispute is already resolved.
            InvalidStateError: The escrow is not DISPUTED.
            UnprocessableEntityError: SPLIT without two percentages summing
                to exactly 100, or a percentage outside 0..100.
        """
        try:
            outcome = DisputeOutcome(outcome)
        except ValueError as err:
            raise ValidationError(f"Unknown dispute outcome: {outcome}") from err

        async with self._ctx.scope(escrow_id) as unit:
            escrow = unit.escrow
            _require_arbitrator(unit, arbitrator_id)

            existing = await DisputeRepository(unit.session).get_by_escrow(escrow.id)
            if existing is not None and existing.status == DisputeStatus.RESOLVED:
                raise DisputeConflictError("Dispute is already resolved")
            if escrow.status != EscrowStatus.DISPUTED:
                raise InvalidStateError(
                    f"Escrow must be DISPUTED to resolve (current: {escrow.status})"
                )
            seller_pct, buyer_pct = _split_percentages(outcome, seller_percent, buyer_percent)
            dispute = existing or await self._dispute_for(unit)

            unit.transition(_status_for(outcome))
            now = unit.now()
            dispute.status = DisputeStatus.RESOLVED.value
            dispute.outcome = outcome.value
            dispute.seller_percent = seller_pct
            dispute.buyer_percent = buyer_pct
            dispute.resolution_notes = notes
            dispute.resolved_by_user_id = arbitrator_id
            dispute.resolved_at = now

            seller_amount = (escrow.amount * seller_pct / HUNDRED).quantize(AMOUNT_QUANTUM)
            settlement = {
                "outcome": outcome,
                "seller_percent": seller_pct,
                "buyer_percent": buyer_pct,
                "seller_amount": seller_amount,
                "buyer_amount": escrow.amount - seller_amount,
                "asset": escrow.asset,
            }
            await unit.log(
                EscrowEventType.DISPUTE_RESOLVED,
                arbitrator_id,
                data={"dispute_id": dispute.id, "notes": notes, **settlement},
            )
            unit.emit(
                WebhookEvent.ESCROW_RESOLVED,
                escrow_payload(escrow, dispute_id=dispute.id, **settlement),
            )

        logger.info(
            "dispute.resolved",
            escrow_id=str(escrow.id),
            outcome=str(outcome),
            by=arbitrator_id,
        )
        return dispute

    async def _dispute_for(self, unit: EscrowScope) -> Dispute:
        """Existing dispute, or a system-filed one for an escalated escrow."""
        repo = DisputeRepository(unit.session)
        dispute = await repo.get_by_escrow(unit.escrow.id)
        if dispute is not None:
            return dispute
        if unit.escrow.status != EscrowStatus.DISPUTED:
            raise DisputeNotFoundError(str(unit.escrow.id))

        now = unit.now()
        logger.info("dispute.synthesized", escrow_id=str(unit.escrow.id))
        return await repo.create(
            Dispute(
                escrow_id=unit.escrow.id,
                filed_by_user_id=SYSTEM_ACTOR,
                reason=ESCALATION_REASON,
                evidence=[],
                status=DisputeStatus.OPEN.value,
                created_at=now,
                updated_at=now,
            )
        )


def _may_file(role: PartyRole) -> bool:
    match role:
        case PartyRole.BUYER | PartyRole.SELLER:
            return True
        case PartyRole.ARBITRATOR:
            return False
        case _:
            assert_never(role)


def _require_arbitrator(unit: EscrowScope, user_id: str) -> None:
    if PartyRole.ARBITRATOR not in roles_of(unit.escrow, user_id):
        raise ForbiddenError("Only an assigned arbitrator can act on this dispute")


def _status_for(outcome: DisputeOutcome) -> EscrowStatus:
    match outcome:
        case DisputeOutcome.RELEASED_TO_SELLER | DisputeOutcome.SPLIT:
            return EscrowStatus.COMPLETED
        case DisputeOutcome.REFUNDED_TO_BUYER:
            return EscrowStatus.CANCELLED
        case _:
            assert_never(outcome)


def _as_percent(value: Decimal | float | str, name: str) -> Decimal:
    try:
        percent = Decimal(str(value))
    except InvalidOperation as err:
        raise UnprocessableEntityError(f"{name} is not a number: {value!r}") from err
    if not percent.is_finite() or not 0 <= percent <= HUNDRED:
        raise UnprocessableEntityError(f"{name} must be between 0 and 100")
    return percent


def _split_percentages(
    outcome: DisputeOutcome,
    seller_percent: Decimal | float | str | None,
    buyer_percent: Decimal | float | str | None,
) -> tuple[Decimal, Decimal]:
    """Seller and buyer shares implied by ``outcome``."""
    match outcome:
        case DisputeOutcome.SPLIT:
            if seller_percent is None or buyer_percent is None:
                raise UnprocessableEntityError(
                    "SPLIT requires both seller_percent and buyer_percent"
                )
            seller = _as_percent(seller_percent, "seller_percent")
            buyer = _as_percent(buyer_percent, "buyer_percent")
            if seller + buyer != HUNDRED:
                raise UnprocessableEntityError(
                    f"Split percentages must sum to 100 (got {seller + buyer})"
                )
            return seller, buyer
        case DisputeOutcome.RELEASED_TO_SELLER:
            return HUNDRED, Decimal(0)
        case DisputeOutcome.REFUNDED_TO_BUYER:
            return Decimal(0), HUNDRED
        case _:
            assert_never(outcome)
