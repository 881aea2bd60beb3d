"""Tests for EscrowWorkflowEngine: create, update, fund, cancel, release."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest
from conftest import ARBITRATOR, BUYER, OUTSIDER, SELLER, webhook_names

from vaultix_escrow.domain.clock import ensure_utc
from vaultix_escrow.domain.enums import EscrowEventType, EscrowStatus
from vaultix_escrow.domain.exceptions import (
    EscrowNotFoundError,
    ForbiddenError,
    InvalidStateError,
    InvalidStateTransitionError,
    LedgerError,
    ValidationError,
)


def event_types(events) -> list[str]:
    return [e.event_type for e in events]


class TestCreate:
    @pytest.mark.asyncio
    async def test_creates_pending_escrow(self, core, escrow_spec, envelopes) -> None:
        escrow = await core.engine.create(escrow_spec, creator_id=BUYER, ip_address="10.0.0.1")

        assert escrow.status == EscrowStatus.PENDING
        assert escrow.is_active is True
        assert escrow.is_released is False
        assert escrow.asset == "XLM"
        assert len(escrow.parties) == 3
        assert [c.description for c in escrow.conditions] == [
            "Concepts delivered",
            "Final files delivered",
        ]

        events = await core.engine.events(escrow.id)
        assert event_types(events) == [EscrowEventType.CREATED]
        assert events[0].ip_address == "10.0.0.1"
        assert webhook_names(envelopes) == ["escrow.created"]
        assert envelopes[0]["data"]["escrow_id"] == str(escrow.id)

    @pytest.mark.asyncio
    async def test_persists_across_sessions(self, core, escrow_spec) -> None:
        escrow = await core.engine.create(escrow_spec, creator_id=BUYER)
        loaded = await core.engine.get(str(escrow.id))
        assert loaded.title == "Logo design"
        assert loaded.amount == Decimal("250.5")

    @pytest.mark.asyncio
    async def test_requires_a_party(self, core, escrow_spec) -> None:
        with pytest.raises(ValidationError):
            await core.engine.create({**escrow_spec, "parties": []}, creator_id=BUYER)

    @pytest.mark.parametrize("amount", ["0", "-5", "abc", "1.123456789"])
    @pytest.mark.asyncio
    async def test_rejects_malformed_amount(self, core, escrow_spec, amount: str) -> None:
        with pytest.raises(ValidationError):
            await core.engine.create({**escrow_spec, "amount": amount}, creator_id=BUYER)

    @pytest.mark.asyncio
    async def test_no_event_when_invalid(self, core, escrow_spec, envelopes) -> None:
        with pytest.raises(ValidationError):
            await core.engine.create({**escrow_spec, "parties": []}, creator_id=BUYER)
        assert envelopes == []


class TestReads:
    @pytest.mark.asyncio
    async def test_get_unknown(self, core) -> None:
        with pytest.raises(EscrowNotFoundError):
            await core.engine.get("00000000-0000-0000-0000-000000000000")

    @pytest.mark.asyncio
    async def test_get_malformed_id(self, core) -> None:
        with pytest.raises(EscrowNotFoundError):
            await core.engine.get("not-a-uuid")

    @pytest.mark.asyncio
    async def test_is_party(self, core, make_escrow) -> None:
        escrow = await make_escrow(fund=False)
        assert await core.engine.is_party(escrow.id, BUYER)
        assert await core.engine.is_party(escrow.id, ARBITRATOR)
        assert not await core.engine.is_party(escrow.id, OUTSIDER)

    @pytest.mark.asyncio
    async def test_list_for_user(self, core, make_escrow) -> None:
        first = await make_escrow(fund=False)
        second = await make_escrow()

        seller_view = await core.engine.list_for_user(SELLER)
        assert {e.id for e in seller_view} == {first.id, second.id}

        active = await core.engine.list_for_user(BUYER, status="ACTIVE")
        assert [e.id for e in active] == [second.id]

        assert await core.engine.list_for_user(OUTSIDER) == []
        assert len(await core.engine.list_for_user(SELLER, page=1, limit=1)) == 1

    @pytest.mark.asyncio
    async def test_list_rejects_bad_paging(self, core) -> None:
        with pytest.raises(ValidationError):
            await core.engine.list_for_user(BUYER, page=0)


class TestUpdate:
    @pytest.mark.asyncio
    async def test_creator_updates_pending(self, core, make_escrow, clock, envelopes) -> None:
        escrow = await make_escrow(fund=False)
        new_expiry = clock.now() + timedelta(days=3)

        updated = await core.engine.update(
            escrow.id, {"title": "Logo v2", "expires_at": new_expiry}, BUYER
        )

        assert updated.title == "Logo v2"
        assert updated.expiration_notified_at is None
        assert webhook_names(envelopes)[-1] == "escrow.updated"

    @pytest.mark.asyncio
    async def test_non_creator_forbidden(self, core, make_escrow) -> None:
        escrow = await make_escrow(fund=False)
        with pytest.raises(ForbiddenError):
            await core.engine.update(escrow.id, {"title": "x"}, SELLER)

    @pytest.mark.asyncio
    async def test_only_while_pending(self, core, make_escrow) -> None:
        escrow = await make_escrow()
        with pytest.raises(InvalidStateError):
            await core.engine.update(escrow.id, {"title": "x"}, BUYER)

    @pytest.mark.asyncio
    async def test_updated_at_follows_injected_clock(self, core, make_escrow, clock) -> None:
        escrow = await make_escrow(fund=False)
        assert ensure_utc(escrow.updated_at) == clock.now()

        clock.advance(hours=5)
        await core.engine.update(escrow.id, {"title": "Logo v3"}, BUYER)
        assert ensure_utc((await core.engine.get(escrow.id)).updated_at) == clock.now()

        clock.advance(days=1)
        await core.engine.fund(escrow.id, BUYER)
        reloaded = await core.engine.get(escrow.id)
        assert ensure_utc(reloaded.updated_at) == clock.now()
        assert ensure_utc(reloaded.created_at) == clock.now() - timedelta(days=1, hours=5)


class TestFund:
    @pytest.mark.asyncio
    async def test_fund_activates(self, core, make_escrow) -> None:
        escrow = await make_escrow()
        assert escrow.status == EscrowStatus.ACTIVE
        assert escrow.funding_transaction_hash == "fund-tx"

    @pytest.mark.asyncio
    async def test_fund_twice_denied_by_state_machine(self, core, make_escrow) -> None:
        escrow = await make_escrow()
        with pytest.raises(InvalidStateTransitionError):
            await core.engine.fund(escrow.id, BUYER)

    @pytest.mark.asyncio
    async def test_only_creator_funds(self, core, make_escrow) -> None:
        escrow = await make_escrow(fund=False)
        with pytest.raises(ForbiddenError):
            await core.engine.fund(escrow.id, SELLER)


class TestCancel:
    @pytest.mark.asyncio
    async def test_creator_cancels_pending(self, core, make_escrow, envelopes) -> None:
        escrow = await make_escrow(fund=False)
        cancelled = await core.engine.cancel(escrow.id, "changed my mind", BUYER)

        assert cancelled.status == EscrowStatus.CANCELLED
        assert cancelled.is_active is False
        events = await core.engine.events(escrow.id)
        assert events[-1].event_type == EscrowEventType.CANCELLED
        assert events[-1].data["previous_status"] == "PENDING"
        assert webhook_names(envelopes)[-1] == "escrow.cancelled"

    @pytest.mark.asyncio
    async def test_arbitrator_cannot_cancel_pending(self, core, make_escrow) -> None:
        escrow = await make_escrow(fund=False)
        with pytest.raises(ForbiddenError):
            await core.engine.cancel(escrow.id, None, ARBITRATOR)

    @pytest.mark.asyncio
    async def test_arbitrator_cancels_active(self, core, make_escrow) -> None:
        escrow = await make_escrow()
        cancelled = await core.engine.cancel(escrow.id, "fraud", ARBITRATOR)
        assert cancelled.status == EscrowStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_seller_cannot_cancel_active(self, core, make_escrow) -> None:
        escrow = await make_escrow()
        with pytest.raises(ForbiddenError):
            await core.engine.cancel(escrow.id, None, SELLER)

    @pytest.mark.asyncio
    async def test_cancel_terminal_is_invalid_state(self, core, make_escrow) -> None:
        escrow = await make_escrow(fund=False)
        await core.engine.cancel(escrow.id, None, BUYER)
        with pytest.raises(InvalidStateError):
            await core.engine.cancel(escrow.id, None, BUYER)

    @pytest.mark.asyncio
    async def test_disputed_only_arbitrator(self, core, make_escrow) -> None:
        escrow = await make_escrow()
        await core.disputes.file_dispute(escrow.id, SELLER, "No payment")
        with pytest.raises(ForbiddenError):
            await core.engine.cancel(escrow.id, None, BUYER)
        cancelled = await core.engine.cancel(escrow.id, "void", ARBITRATOR)
        assert cancelled.status == EscrowStatus.CANCELLED


class TestRelease:
    @pytest.mark.asyncio
    async def test_manual_release(self, core, make_escrow, ledger, envelopes) -> None:
        escrow = await make_escrow()
        released = await core.engine.release_escrow(escrow.id, BUYER)

        assert released.status == EscrowStatus.COMPLETED
        assert released.is_released is True
        assert released.is_active is False
        assert released.release_transaction_hash == "tx-0001"
        assert ledger.calls == [str(escrow.id)]
        assert webhook_names(envelopes).count("escrow.released") == 1

    @pytest.mark.asyncio
    async def test_release_completed_is_noop(self, core, make_escrow, ledger, envelopes) -> None:
        escrow = await make_escrow()
        await core.engine.release_escrow(escrow.id, BUYER)
        again = await core.engine.release_escrow(escrow.id, BUYER)

        assert again.status == EscrowStatus.COMPLETED
        assert len(ledger.calls) == 1
        assert webhook_names(envelopes).count("escrow.released") == 1
        events = await core.engine.events(escrow.id)
        assert event_types(events).count(EscrowEventType.COMPLETED) == 1

    @pytest.mark.asyncio
    async def test_manual_release_by_seller_forbidden(self, core, make_escrow) -> None:
        escrow = await make_escrow()
        with pytest.raises(ForbiddenError):
            await core.engine.release_escrow(escrow.id, SELLER)

    @pytest.mark.asyncio
    async def test_release_pending_invalid(self, core, make_escrow) -> None:
        escrow = await make_escrow(fund=False)
        with pytest.raises(InvalidStateError):
            await core.engine.release_escrow(escrow.id, BUYER)

    @pytest.mark.asyncio
    async def test_automatic_release_needs_all_conditions(self, core, make_escrow) -> None:
        escrow = await make_escrow()
        with pytest.raises(InvalidStateError):
            await core.engine.release_escrow(escrow.id, BUYER, manual=False)

    @pytest.mark.asyncio
    async def test_transient_ledger_failure_is_retried(self, core, make_escrow, ledger) -> None:
        ledger.fail_times = 2
        escrow = await make_escrow()
        released = await core.engine.release_escrow(escrow.id, BUYER)
        assert released.is_released is True
        assert len(ledger.calls) == 3

    @pytest.mark.asyncio
    async def test_ledger_failure_leaves_escrow_active(
        self, core, make_escrow, ledger, envelopes
    ) -> None:
        ledger.fail_times = 10
        escrow = await make_escrow()

        with pytest.raises(LedgerError):
            await core.engine.release_escrow(escrow.id, BUYER)

        assert len(ledger.calls) == 3
        reloaded = await core.engine.get(escrow.id)
        assert reloaded.status == EscrowStatus.ACTIVE
        assert reloaded.is_released is False
        assert "escrow.released" not in webhook_names(envelopes)

    @pytest.mark.asyncio
    async def test_non_retryable_ledger_failure(self, core, make_escrow, ledger) -> None:
        ledger.fail_times = 10
        ledger.retryable = False
        escrow = await make_escrow()
        with pytest.raises(LedgerError):
            await core.engine.release_escrow(escrow.id, BUYER)
        assert len(ledger.calls) == 1

    @pytest.mark.asyncio
    async def test_concurrent_releases_settle_once(self, core, make_escrow, ledger) -> None:
        escrow = await make_escrow()
        results = await asyncio.gather(
            *(core.engine.release_escrow(escrow.id, BUYER) for _ in range(5))
        )
        assert all(r.status == EscrowStatus.COMPLETED for r in results)
        assert len(ledger.calls) == 1


class TestEventStream:
    @pytest.mark.asyncio
    async def test_subscribers_see_committed_events(self, core, make_escrow) -> None:
        seen: list[str] = []
        core.event_log.subscribe(lambda entry: seen.append(entry.event_type))

        escrow = await make_escrow()
        with pytest.raises(ForbiddenError):
            await core.engine.cancel(escrow.id, None, SELLER)

        assert seen == [EscrowEventType.CREATED, EscrowEventType.FUNDED]

    @pytest.mark.asyncio
    async def test_failing_subscriber_does_not_break_workflow(self, core, escrow_spec) -> None:
        def boom(entry) -> None:
            raise RuntimeError("subscriber down")

        core.event_log.subscribe(boom)
        escrow = await core.engine.create(escrow_spec, creator_id=BUYER)
        assert escrow.status == EscrowStatus.PENDING
