"""Escrow Workflow Engine: core business logic for the escrow lifecycle.

This is the application layer that coordinates between:
    - Domain state machine (transition guard)
    - Repositories (data access)
    - Event log (audit trail)
    - Webhook dispatcher (outbound notifications)
    - Ledger (settlement of released funds)

Every mutation runs inside ``EscrowContext.scope`` so concurrent callers
acting on the same escrow are serialized.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, assert_never

from vaultix_escrow.domain.enums import (
    EscrowEventType,
    EscrowStatus,
    PartyRole,
    WebhookEvent,
)
from vaultix_escrow.domain.exceptions import (
    EscrowNotFoundError,
    ForbiddenError,
    InvalidStateError,
    ValidationError,
)
from vaultix_escrow.domain.state_machine import is_terminal
from vaultix_escrow.infrastructure.database.orm_models import Condition, Escrow, Party
from vaultix_escrow.infrastructure.database.repositories import EscrowRepository
from vaultix_escrow.logging_config import get_logger
from vaultix_escrow.schemas import CreateEscrowSpec, UpdateEscrowPatch, parse_input
from vaultix_escrow.services.context import coerce_id, escrow_payload, roles_of
from vaultix_escrow.services.ledger_service import settle_with_retry

if TYPE_CHECKING:
    import uuid

    from vaultix_escrow.infrastructure.database.orm_models import EscrowEvent
    from vaultix_escrow.services.context import EscrowContext, EscrowScope

logger = get_logger(__name__)

MAX_PAGE_SIZE = 100


class EscrowWorkflowEngine:
    """Manages the escrow lifecycle."""

    def __init__(self, context: EscrowContext) -> None:
        self._ctx = context

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create(
        self,
        spec: CreateEscrowSpec | dict,
        creator_id: str,
        ip_address: str | None = None,
    ) -> Escrow:
        """Create a new escrow in PENDING state.

        Raises:
            ValidationError: No parties, or an amount that is not a positive
                decimal with at most 7 fractional digits.
        """
        spec = parse_input(CreateEscrowSpec, spec)
        now = self._ctx.clock.now()

        escrow = Escrow(
            title=spec.title,
            description=spec.description,
            amount=spec.amount,
            asset=spec.asset or self._ctx.default_asset,
            type=spec.type.value,
            status=EscrowStatus.PENDING.value,
            creator_id=creator_id,
            expires_at=spec.expires_at,
            is_active=True,
            is_released=False,
            created_at=now,
            updated_at=now,
        )
        # dict.fromkeys keeps order while dropping repeated (user, role) pairs
        escrow.parties = [
            Party(user_id=p.user_id, role=p.role.value, created_at=now)
            for p in dict.fromkeys(spec.parties)
        ]
        escrow.conditions = [
            Condition(
                position=index,
                description=c.description,
                type=c.type.value,
                metadata_json=c.metadata,
                created_at=now,
                updated_at=now,
            )
            for index, c in enumerate(spec.conditions)
        ]

        async with self._ctx.new_escrow_scope() as unit:
            unit.escrow = await EscrowRepository(unit.session).create(escrow)
            await unit.log(
                EscrowEventType.CREATED,
                creator_id,
                data={
                    "title": escrow.title,
                    "amount": escrow.amount,
                    "asset": escrow.asset,
                    "parties": len(escrow.parties),
                    "conditions": len(escrow.conditions),
                },
                ip_address=ip_address,
            )
            unit.emit(WebhookEvent.ESCROW_CREATED, escrow_payload(escrow))

        logger.info(
            "escrow.created",
            escrow_id=str(escrow.id),
            amount=str(escrow.amount),
            asset=escrow.asset,
        )
        return escrow

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, escrow_id: uuid.UUID | str) -> Escrow:
        """Get an escrow or raise EscrowNotFoundError."""
        key = coerce_id(escrow_id)
        async with self._ctx.session_factory() as session:
            escrow = await EscrowRepository(session).get_by_id(key)
        if escrow is None:
            raise EscrowNotFoundError(str(key))
        return escrow

    async def list_for_user(
        self,
        user_id: str,
        status: EscrowStatus | str | None = None,
        role: PartyRole | str | None = None,
        page: int = 1,
        limit: int = 10,
    ) -> list[Escrow]:
        """Escrows the user created or holds a role on, newest first."""
        if page < 1 or not 1 <= limit <= MAX_PAGE_SIZE:
            raise ValidationError(f"page must be >= 1 and limit within 1..{MAX_PAGE_SIZE}")
        try:
            status = EscrowStatus(status) if status is not None else None
            role = PartyRole(role) if role is not None else None
        except ValueError as err:
            raise ValidationError(str(err)) from err

        async with self._ctx.session_factory() as session:
            return await EscrowRepository(session).list_for_user(
                user_id,
                status=status,
                role=role,
                offset=(page - 1) * limit,
                limit=limit,
            )

    async def is_party(self, escrow_id: uuid.UUID | str, user_id: str) -> bool:
        """True when ``user_id`` created the escrow or holds any role on it."""
        escrow = await self.get(escrow_id)
        return escrow.creator_id == user_id or bool(roles_of(escrow, user_id))

    async def events(self, escrow_id: uuid.UUID | str) -> list[EscrowEvent]:
        """Audit trail, oldest first."""
        escrow = await self.get(escrow_id)
        return await self._ctx.event_log.history(escrow.id)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def update(
        self,
        escrow_id: uuid.UUID | str,
        patch: UpdateEscrowPatch | dict,
        user_id: str,
        ip_address: str | None = None,
    ) -> Escrow:
        """Edit title, description or expiry while the escrow is PENDING."""
        patch = parse_input(UpdateEscrowPatch, patch)

        async with self._ctx.scope(escrow_id) as unit:
            escrow = unit.escrow
            if escrow.creator_id != user_id:
                raise ForbiddenError("Only the escrow creator can update it")
            if escrow.status != EscrowStatus.PENDING:
                raise InvalidStateError(
                    f"Escrow can only be updated while PENDING (current: {escrow.status})"
                )

            changes = patch.model_dump(exclude_unset=True)
            if "title" in changes and changes["title"] is None:
                raise ValidationError("title cannot be cleared")
            for name, value in changes.items():
                setattr(escrow, name, value)
            if "expires_at" in changes:
                # A new deadline deserves a fresh warning
                escrow.expiration_notified_at = None

            await unit.log(EscrowEventType.UPDATED, user_id, data=changes, ip_address=ip_address)
            unit.emit(WebhookEvent.ESCROW_UPDATED, escrow_payload(escrow, changes=changes))

        logger.info("escrow.updated", escrow_id=str(escrow.id), fields=sorted(changes))
        return escrow

    async def fund(
        self,
        escrow_id: uuid.UUID | str,
        user_id: str,
        funding_tx_hash: str | None = None,
    ) -> Escrow:
        """Record funding by the creator and activate the escrow."""
        async with self._ctx.scope(escrow_id) as unit:
            escrow = unit.escrow
            if escrow.creator_id != user_id:
                raise ForbiddenError("Only the escrow creator can fund it")
            unit.transition(EscrowStatus.ACTIVE)
            escrow.funding_transaction_hash = funding_tx_hash

            await unit.log(
                EscrowEventType.FUNDED,
                user_id,
                data={"tx_hash": funding_tx_hash, "amount": escrow.amount},
            )
            unit.emit(WebhookEvent.ESCROW_FUNDED, escrow_payload(escrow, tx_hash=funding_tx_hash))

        logger.info("escrow.funded", escrow_id=str(escrow.id), tx_hash=funding_tx_hash)
        return escrow

    async def cancel(
        self,
        escrow_id: uuid.UUID | str,
        reason: str | None,
        user_id: str,
        ip_address: str | None = None,
    ) -> Escrow:
        """Cancel an escrow.

        PENDING: creator only. ACTIVE: creator or an assigned arbitrator.
        DISPUTED: an assigned arbitrator only.
        """
        async with self._ctx.scope(escrow_id) as unit:
            escrow = unit.escrow
            previous = EscrowStatus(escrow.status)
            if is_terminal(previous):
                raise InvalidStateError(f"Escrow is already {previous}")
            if not _may_cancel(escrow, user_id):
                raise ForbiddenError(f"User may not cancel a {previous} escrow")

            unit.transition(EscrowStatus.CANCELLED)
            await unit.log(
                EscrowEventType.CANCELLED,
                user_id,
                data={"reason": reason, "previous_status": previous},
                ip_address=ip_address,
            )
            unit.emit(WebhookEvent.ESCROW_CANCELLED, escrow_payload(escrow, reason=reason))

        logger.info(
            "escrow.cancelled",
            escrow_id=str(escrow.id),
            previous_status=str(previous),
            by=user_id,
        )
        return escrow

    async def release_escrow(
        self,
        escrow_id: uuid.UUID | str,
        caller_id: str,
        manual: bool = True,
    ) -> Escrow:
        """Release the escrowed funds to the seller.

        Idempotent: an already COMPLETED or released escrow is returned as is,
        without a second ledger call.

        Raises:
            InvalidStateError: Escrow not ACTIVE, or (automatic) not every
                condition is met.
            ForbiddenError: Manual release by anyone but the creator.
            LedgerError: Settlement failed after bounded retries; nothing is
                committed.
        """
        async with self._ctx.scope(escrow_id) as unit:
            return await self.release_in_scope(unit, caller_id, manual=manual)

    async def release_in_scope(
        self,
        unit: EscrowScope,
        caller_id: str,
        manual: bool,
    ) -> Escrow:
        """Release logic for a caller already holding the escrow's scope."""
        escrow = unit.escrow
        if escrow.status == EscrowStatus.COMPLETED or escrow.is_released:
            logger.info("escrow.release_noop", escrow_id=str(escrow.id), status=escrow.status)
            return escrow
        if escrow.status != EscrowStatus.ACTIVE:
            raise InvalidStateError(
                f"Escrow must be ACTIVE to release (current: {escrow.status})"
            )
        if manual and caller_id != escrow.creator_id:
            raise ForbiddenError("Only the escrow creator can release funds")
        if not manual and not all(c.is_met for c in escrow.conditions):
            raise InvalidStateError("All conditions must be met before automatic release")

        receipt = await settle_with_retry(
            self._ctx.ledger,
            str(escrow.id),
            escrow.creator_id,
            max_attempts=self._ctx.ledger_max_attempts,
            backoff_base=self._ctx.ledger_backoff_base,
            backoff_max=self._ctx.ledger_backoff_max,
        )

        unit.transition(EscrowStatus.COMPLETED)
        escrow.is_released = True
        escrow.release_transaction_hash = receipt.tx_hash

        await unit.log(
            EscrowEventType.COMPLETED,
            caller_id,
            data={"tx_hash": receipt.tx_hash, "manual": manual, "amount": escrow.amount},
        )
        unit.emit(
            WebhookEvent.ESCROW_RELEASED,
            escrow_payload(escrow, tx_hash=receipt.tx_hash, manual=manual),
        )

        logger.info(
            "escrow.released",
            escrow_id=str(escrow.id),
            tx_hash=receipt.tx_hash,
            manual=manual,
        )
        return escrow


def _may_cancel(escrow: Escrow, user_id: str) -> bool:
    status = EscrowStatus(escrow.status)
    is_creator = escrow.creator_id == user_id
    is_arbitrator = any(_arbitrates(role) for role in roles_of(escrow, user_id))
    match status:
        case EscrowStatus.PENDING:
            return is_creator
        case EscrowStatus.ACTIVE:
            return is_creator or is_arbitrator
        case EscrowStatus.DISPUTED:
            return is_arbitrator
        case EscrowStatus.COMPLETED | EscrowStatus.CANCELLED:
            return False
        case _:
            assert_never(status)


def _arbitrates(role: PartyRole) -> bool:
    match role:
        case PartyRole.ARBITRATOR:
            return True
        case PartyRole.BUYER | PartyRole.SELLER:
            return False
        case _:
            assert_never(role)
