"""Ledger Service Protocol.

Defines the narrow contract through which the core settles escrowed funds
on-chain. This is a Protocol (structural subtyping) so concrete ledgers
don't need to inherit from a base class — they just need to match the shape.

The domain layer has ZERO imports from any blockchain SDK or HTTP client.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, runtime_checkable


@dataclass(frozen=True)
class SettlementReceipt:
    """Output from a ledger settlement.

    Attributes:
        escrow_id: The escrow whose funds were settled.
        tx_hash: Hash of the settlement transaction.
    """

    escrow_id: str
    tx_hash: str


@runtime_checkable
class LedgerService(Protocol):
    """Protocol that all ledger implementations must satisfy.

    Concrete implementations:
        - services/ledger_service.py SimulatedLedgerService (generated hashes)
        - services/ledger_service.py HttpLedgerService (ledger gateway)
    """

    async def settle(self, escrow_id: str, source_key: str) -> SettlementReceipt:
        """Release the escrowed funds.

        Args:
            escrow_id: The escrow to settle.
            source_key: Key of the paying account (the escrow creator).

        Returns:
            A SettlementReceipt carrying the transaction hash.

        Raises:
            LedgerError: On failure. ``retryable`` tells the caller whether
                another attempt may succeed.
        """
        ...
