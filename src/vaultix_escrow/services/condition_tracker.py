"""Condition Tracker: seller fulfillment, buyer confirmation, auto-release.

A condition is fulfilled by the seller and then confirmed (met) by the
buyer. When the last condition is confirmed the escrow is released
automatically, inside the same serialized scope and transaction as the
confirmation. Two racing confirmations therefore cannot both miss the
"all met" state or both trigger a release, and a ledger failure rolls the
confirmation back so the caller can retry.
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING

from vaultix_escrow.domain.enums import (
    EscrowEventType,
    EscrowStatus,
    PartyRole,
    WebhookEvent,
)
from vaultix_escrow.domain.exceptions import (
    ConditionNotFoundError,
    ForbiddenError,
    InvalidStateError,
)
from vaultix_escrow.infrastructure.database.orm_models import Condition
from vaultix_escrow.logging_config import get_logger
from vaultix_escrow.schemas import ConditionSpec, parse_input
from vaultix_escrow.services.context import roles_of

if TYPE_CHECKING:
    from vaultix_escrow.infrastructure.database.orm_models import Escrow
    from vaultix_escrow.services.context import EscrowContext, EscrowScope
    from vaultix_escrow.services.workflow_engine import EscrowWorkflowEngine

logger = get_logger(__name__)


class ConditionTracker:
    """Tracks release conditions of escrows."""

    def __init__(self, context: EscrowContext, engine: EscrowWorkflowEngine) -> None:
        self._ctx = context
        self._engine = engine

    async def add_condition(
        self,
        escrow_id: uuid.UUID | str,
        spec: ConditionSpec | dict,
        user_id: str,
    ) -> Condition:
        """Append a condition while the escrow is still PENDING (creator only)."""
        spec = parse_input(ConditionSpec, spec)

        async with self._ctx.scope(escrow_id) as unit:
            escrow = unit.escrow
            if escrow.creator_id != user_id:
                raise ForbiddenError("Only the escrow creator can add conditions")
            if escrow.status != EscrowStatus.PENDING:
                raise InvalidStateError(
                    f"Conditions can only be added while PENDING (current: {escrow.status})"
                )

            now = unit.now()
            condition = Condition(
                position=max((c.position for c in escrow.conditions), default=-1) + 1,
                description=spec.description,
                type=spec.type.value,
                metadata_json=spec.metadata,
                created_at=now,
                updated_at=now,
            )
            escrow.conditions.append(condition)
            await unit.session.flush()

            await unit.log(
                EscrowEventType.CONDITION_ADDED,
                user_id,
                data={"condition_id": condition.id, "description": condition.description},
            )

        logger.info("condition.added", escrow_id=str(escrow.id), condition_id=str(condition.id))
        return condition

    async def fulfill(
        self,
        escrow_id: uuid.UUID | str,
        condition_id: uuid.UUID | str,
        notes: str | None,
        evidence: str | None,
        user_id: str,
    ) -> Condition:
        """Seller attests that a condition has been fulfilled.

        Idempotent: an already fulfilled condition is returned unchanged
        with no new event or webhook.
        """
        async with self._ctx.scope(escrow_id) as unit:
            escrow = unit.escrow
            _require_role(escrow, user_id, PartyRole.SELLER)
            condition = _find_condition(escrow, condition_id)
            if condition.is_fulfilled:
                return condition
            _require_active(escrow)

            condition.is_fulfilled = True
            condition.fulfilled_at = unit.now()
            condition.fulfilled_by_user_id = user_id
            condition.fulfillment_notes = notes
            condition.fulfillment_evidence = evidence

            await unit.log(
                EscrowEventType.CONDITION_FULFILLED,
                user_id,
                data={"condition_id": condition.id, "notes": notes, "evidence": evidence},
            )
            unit.emit(
                WebhookEvent.CONDITION_FULFILLED,
                {
                    "escrow_id": escrow.id,
                    "condition_id": condition.id,
                    "fulfilled_by": user_id,
                    "notes": notes,
                },
            )

        logger.info(
            "condition.fulfilled",
            escrow_id=str(escrow.id),
            condition_id=str(condition.id),
            by=user_id,
        )
        return condition

    async def confirm(
        self,
        escrow_id: uuid.UUID | str,
        condition_id: uuid.UUID | str,
        user_id: str,
    ) -> Condition:
        """Buyer confirms a fulfilled condition; releases when all are met.

        Idempotent: confirming an already met condition changes nothing and
        never triggers a second release.

        Raises:
            InvalidStateError: Escrow not ACTIVE, or condition not fulfilled.
            LedgerError: The automatic release failed; the confirmation is
                rolled back with it.
        """
        async with self._ctx.scope(escrow_id) as unit:
            escrow = unit.escrow
            _require_role(escrow, user_id, PartyRole.BUYER)
            condition = _find_condition(escrow, condition_id)
            if condition.is_met:
                return condition
            _require_active(escrow)
            if not condition.is_fulfilled:
                raise InvalidStateError("Condition must be fulfilled before it can be confirmed")

            condition.is_met = True
            condition.met_at = unit.now()
            condition.met_by_user_id = user_id

            await unit.log(
                EscrowEventType.CONDITION_MET,
                user_id,
                data={"condition_id": condition.id},
            )
            unit.emit(
                WebhookEvent.CONDITION_CONFIRMED,
                {"escrow_id": escrow.id, "condition_id": condition.id, "confirmed_by": user_id},
            )
            logger.info(
                "condition.confirmed",
                escrow_id=str(escrow.id),
                condition_id=str(condition.id),
                by=user_id,
            )

            if all(c.is_met for c in escrow.conditions):
                logger.info("condition.all_met", escrow_id=str(escrow.id))
                await self._auto_release(unit)

        return condition

    async def _auto_release(self, unit: EscrowScope) -> None:
        await self._engine.release_in_scope(unit, unit.escrow.creator_id, manual=False)


def _require_role(escrow: Escrow, user_id: str, role: PartyRole) -> None:
    if role not in roles_of(escrow, user_id):
        raise ForbiddenError(f"Only the {role.lower()} can perform this action")


def _require_active(escrow: Escrow) -> None:
    if escrow.status != EscrowStatus.ACTIVE:
        raise InvalidStateError(f"Escrow must be ACTIVE (current: {escrow.status})")


def _find_condition(escrow: Escrow, condition_id: uuid.UUID | str) -> Condition:
    try:
        key = condition_id if isinstance(condition_id, uuid.UUID) else uuid.UUID(str(condition_id))
    except ValueError as err:
        raise ConditionNotFoundError(str(escrow.id), str(condition_id)) from err
    for condition in escrow.conditions:
        if condition.id == key:
            return condition
    raise ConditionNotFoundError(str(escrow.id), str(condition_id))
