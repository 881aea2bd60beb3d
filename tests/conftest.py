"""Shared test fixtures for the escrow core test suite.

Provides:
    - A temporary-file SQLite database per test (aiosqlite)
    - A ManualClock pinned to a fixed instant
    - A recording ledger that can be told to fail
    - A fully wired EscrowCore with recorded webhook envelopes and backoff sleeps
    - Factory helpers for creating escrows in a given state
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine

from vaultix_escrow.bootstrap import build_core
from vaultix_escrow.config import Settings
from vaultix_escrow.domain.clock import ManualClock
from vaultix_escrow.domain.exceptions import LedgerError
from vaultix_escrow.domain.ledger_protocol import SettlementReceipt
from vaultix_escrow.infrastructure.database.engine import build_session_factory
from vaultix_escrow.infrastructure.database.orm_models import Base
from vaultix_escrow.services.webhook_dispatcher import WebhookDispatcher

BUYER = "buyer-1"
SELLER = "seller-1"
ARBITRATOR = "arbitrator-1"
OUTSIDER = "outsider-1"

# ---------------------------------------------------------------------------
# Doubles
# ---------------------------------------------------------------------------


@dataclass
class RecordingLedger:
    """Ledger double: records calls, optionally failing the first N."""

    fail_times: int = 0
    retryable: bool = True
    calls: list[str] = field(default_factory=list)

    async def settle(self, escrow_id: str, source_key: str) -> SettlementReceipt:
        self.calls.append(escrow_id)
        if len(self.calls) <= self.fail_times:
            raise LedgerError("ledger unavailable", retryable=self.retryable)
        return SettlementReceipt(escrow_id=escrow_id, tx_hash=f"tx-{len(self.calls):04d}")


class RecordingSleep:
    """Stands in for asyncio.sleep and remembers the requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


# ---------------------------------------------------------------------------
# Infrastructure Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(datetime(2026, 1, 15, 12, 0, tzinfo=UTC))


@pytest.fixture
def ledger() -> RecordingLedger:
    return RecordingLedger()


@pytest.fixture
def sleeper() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        database_url="sqlite+aiosqlite://",
        ledger_backoff_base_seconds=0,
        ledger_backoff_max_seconds=0,
        scheduler_enabled=False,
    )


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'escrow.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield build_session_factory(engine)
    await engine.dispose()


@pytest_asyncio.fixture
async def http_client():
    async with httpx.AsyncClient() as client:
        yield client


@pytest_asyncio.fixture
async def dispatcher(session_factory, http_client, clock, sleeper):
    dispatcher = WebhookDispatcher(session_factory, http_client, clock=clock, sleep=sleeper)
    yield dispatcher
    await dispatcher.drain()


@pytest.fixture
def envelopes(dispatcher) -> list[dict]:
    """Every webhook envelope queued by the dispatcher, in order."""
    queued: list[dict] = []
    dispatcher.add_listener(queued.append)
    return queued


@pytest.fixture
def core(session_factory, settings, ledger, clock, dispatcher):
    return build_core(
        session_factory,
        settings=settings,
        ledger=ledger,
        clock=clock,
        dispatcher=dispatcher,
    )


# ---------------------------------------------------------------------------
# Domain Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def escrow_spec() -> dict:
    """Return a valid escrow creation payload with two conditions."""
    return {
        "title": "Logo design",
        "description": "Three logo concepts and final vector files",
        "amount": Decimal("250.5"),
        "parties": [
            {"user_id": BUYER, "role": "BUYER"},
            {"user_id": SELLER, "role": "SELLER"},
            {"user_id": ARBITRATOR, "role": "ARBITRATOR"},
        ],
        "conditions": [
            {"description": "Concepts delivered"},
            {"description": "Final files delivered"},
        ],
    }


@pytest.fixture
def make_escrow(core, escrow_spec):
    """Factory: create an escrow, funding it unless ``fund=False``."""

    async def _make(fund: bool = True, **overrides):
        escrow = await core.engine.create({**escrow_spec, **overrides}, creator_id=BUYER)
        if fund:
            escrow = await core.engine.fund(escrow.id, BUYER, funding_tx_hash="fund-tx")
        return escrow

    return _make


def webhook_names(envelopes: list[dict]) -> list[str]:
    return [e["event"] for e in envelopes]
