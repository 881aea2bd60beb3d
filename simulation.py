#!/usr/bin/env python3
"""Vaultix Escrow — End-to-End Simulation.

Simulates three scenarios with a buyer, a seller and an arbitrator:

    Scenario 1: Happy Path
        - Buyer creates and funds an escrow with two conditions
        - Seller fulfills both, buyer confirms both -> auto-release, COMPLETED

    Scenario 2: Disputed Split
        - Buyer disputes an ACTIVE escrow
        - Arbitrator reviews and splits the funds 70/30 -> COMPLETED

    Scenario 3: Expiry
        - An unfunded escrow passes its deadline -> auto-cancelled
        - A funded escrow passes its deadline -> escalated to DISPUTED

Runs against a throwaway SQLite file with the simulated ledger and a manual
clock, so it needs no PostgreSQL, Redis or network.

Usage:
    uv run python simulation.py
    uv run python simulation.py --scenario 2
"""

from __future__ import annotations

import argparse
import asyncio
import tempfile
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from pathlib import Path

from sqlalchemy.ext.asyncio import create_async_engine

from vaultix_escrow.bootstrap import EscrowCore, build_core
from vaultix_escrow.config import Settings
from vaultix_escrow.domain.clock import ManualClock
from vaultix_escrow.infrastructure.database.engine import build_session_factory
from vaultix_escrow.infrastructure.database.orm_models import Base
from vaultix_escrow.logging_config import get_logger, setup_logging
from vaultix_escrow.services.ledger_service import SimulatedLedgerService

setup_logging(log_level="INFO", json_logs=False)
logger = get_logger("simulation")

BUYER = "buyer-bot"
SELLER = "seller-bot"
ARBITRATOR = "arbitrator-bot"


def escrow_spec(title: str, amount: str, **extra: object) -> dict:
    return {
        "title": title,
        "amount": Decimal(amount),
        "parties": [
            {"user_id": BUYER, "role": "BUYER"},
            {"user_id": SELLER, "role": "SELLER"},
            {"user_id": ARBITRATOR, "role": "ARBITRATOR"},
        ],
        **extra,
    }


# ---------------------------------------------------------------------------
# Display helpers
# ---------------------------------------------------------------------------
def banner(text: str) -> None:
    width = 70
    print("\n" + "=" * width)
    print(f"  {text}")
    print("=" * width + "\n")


def section(text: str) -> None:
    print(f"\n--- {text} ---\n")


async def print_audit_trail(core: EscrowCore, escrow_id) -> None:
    events = await core.engine.events(escrow_id)
    print("\n  Audit Trail:")
    for i, evt in enumerate(events, 1):
        print(f"    {i}. [{evt.event_type}] by {evt.actor_id} {evt.data or ''}")
    print()


# ---------------------------------------------------------------------------
# Scenarios
# ---------------------------------------------------------------------------
async def scenario_1_happy_path(core: EscrowCore, clock: ManualClock) -> None:
    banner("SCENARIO 1: Happy Path (conditions met -> auto-release)")

    escrow = await core.engine.create(
        escrow_spec(
            "Website redesign",
            "1200",
            conditions=[{"description": "Mockups approved"}, {"description": "Site deployed"}],
        ),
        creator_id=BUYER,
    )
    await core.engine.fund(escrow.id, BUYER, funding_tx_hash="funding-tx-1")

    for condition in escrow.conditions:
        section(f"Condition: {condition.description}")
        await core.conditions.fulfill(escrow.id, condition.id, "done", None, SELLER)
        await core.conditions.confirm(escrow.id, condition.id, BUYER)

    final = await core.engine.get(escrow.id)
    print(f"  Status: {final.status}")
    print(f"  Release TX: {final.release_transaction_hash}")
    await print_audit_trail(core, escrow.id)


async def scenario_2_disputed_split(core: EscrowCore, clock: ManualClock) -> None:
    banner("SCENARIO 2: Disputed Split (arbitrator splits 70/30)")

    escrow = await core.engine.create(escrow_spec("Translation job", "500"), creator_id=BUYER)
    await core.engine.fund(escrow.id, BUYER)

    await core.disputes.file_dispute(escrow.id, BUYER, "Half the chapters missing")
    await core.disputes.begin_review(escrow.id, ARBITRATOR)
    dispute = await core.disputes.resolve_dispute(
        escrow.id, ARBITRATOR, "SPLIT", "Partial delivery", 70, 30
    )

    final = await core.engine.get(escrow.id)
    print(f"  Dispute: {dispute.status} ({dispute.outcome})")
    print(f"  Status: {final.status}")
    await print_audit_trail(core, escrow.id)


async def scenario_3_expiry(core: EscrowCore, clock: ManualClock) -> None:
    banner("SCENARIO 3: Expiry (auto-cancel and escalation)")

    deadline = clock.now() + timedelta(hours=6)
    unfunded = await core.engine.create(
        escrow_spec("Never funded", "40", expires_at=deadline), creator_id=BUYER
    )
    funded = await core.engine.create(
        escrow_spec("Stalled delivery", "90", expires_at=deadline), creator_id=BUYER
    )
    await core.engine.fund(funded.id, BUYER)

    section("Warning sweep")
    warned = await core.scheduler.run_warning_sweep()
    print(f"  Warned: {len(warned.warned)}")

    section("Clock advanced past the deadline")
    clock.advance(hours=7)
    report = await core.scheduler.run_expiry_sweep()
    print(f"  Cancelled: {len(report.cancelled)}  Escalated: {len(report.escalated)}")

    for escrow in (unfunded, funded):
        final = await core.engine.get(escrow.id)
        print(f"  {final.title}: {final.status}")
    await print_audit_trail(core, funded.id)


SCENARIOS = {
    1: scenario_1_happy_path,
    2: scenario_2_disputed_split,
    3: scenario_3_expiry,
}


async def run(selected: list[int]) -> None:
    with tempfile.TemporaryDirectory() as tmp:
        engine = create_async_engine(f"sqlite+aiosqlite:///{Path(tmp) / 'simulation.db'}")
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        clock = ManualClock(datetime(2026, 1, 15, 12, 0, tzinfo=UTC))
        settings = Settings(_env_file=None, scheduler_enabled=False)
        core = build_core(
            build_session_factory(engine),
            settings=settings,
            ledger=SimulatedLedgerService(),
            clock=clock,
        )
        core.dispatcher.add_listener(
            lambda envelope: logger.info("simulation.webhook", webhook_event=envelope["event"])
        )

        try:
            for num in selected:
                await SCENARIOS[num](core, clock)
            banner("SIMULATION COMPLETE")
        finally:
            await core.dispatcher.aclose()
            await engine.dispose()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Vaultix Escrow Simulation")
    parser.add_argument(
        "--scenario",
        type=int,
        default=0,
        choices=[0, *SCENARIOS],
        help="Run a specific scenario (1, 2, or 3). Default: run all.",
    )
    args = parser.parse_args()

    asyncio.run(run(list(SCENARIOS) if args.scenario == 0 else [args.scenario]))
