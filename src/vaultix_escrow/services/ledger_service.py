"""Ledger Service: settles escrowed funds on-chain.

Two implementations of the ``LedgerService`` protocol:
    - SimulatedLedgerService generates fake transaction hashes, so the core
      can run end to end without a ledger.
    - HttpLedgerService posts settlement requests to a ledger gateway.

``settle_with_retry`` wraps either one with bounded exponential backoff.
Transient failures are retried; anything else surfaces immediately.
"""

from __future__ import annotations

import uuid

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from vaultix_escrow.config import get_settings
from vaultix_escrow.domain.exceptions import LedgerError
from vaultix_escrow.domain.ledger_protocol import LedgerService, SettlementReceipt
from vaultix_escrow.logging_config import get_logger

logger = get_logger(__name__)


class SimulatedLedgerService:
    """Settles instantly with a generated 64-hex transaction hash."""

    async def settle(self, escrow_id: str, source_key: str) -> SettlementReceipt:
        tx_hash = uuid.uuid4().hex + uuid.uuid4().hex
        logger.info(
            "ledger.settlement_simulated",
            escrow_id=escrow_id,
            source=source_key,
            tx_hash=tx_hash,
        )
        return SettlementReceipt(escrow_id=escrow_id, tx_hash=tx_hash)


class HttpLedgerService:
    """Settles through a ledger gateway's ``POST /settlements`` endpoint.

    Transport errors and 5xx responses raise a retryable LedgerError;
    4xx responses are rejections and are not retried.
    """

    def __init__(
        self,
        base_url: str | None = None,
        client: httpx.AsyncClient | None = None,
        timeout: float | None = None,
    ) -> None:
        settings = get_settings()
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url or settings.ledger_url,
            timeout=timeout or settings.ledger_timeout_seconds,
        )

    async def settle(self, escrow_id: str, source_key: str) -> SettlementReceipt:
        try:
            response = await self._client.post(
                "/settlements",
                json={"escrow_id": escrow_id, "source_key": source_key},
            )
        except httpx.HTTPError as exc:
            logger.warning("ledger.transport_error", escrow_id=escrow_id, error=str(exc))
            raise LedgerError(f"Ledger unreachable: {exc}", retryable=True) from exc

        if response.status_code >= 500:
            raise LedgerError(
                f"Ledger error {response.status_code} for escrow {escrow_id}",
                retryable=True,
            )
        if response.status_code >= 400:
            raise LedgerError(
                f"Ledger rejected settlement for escrow {escrow_id}: {response.text}",
                retryable=False,
            )

        tx_hash = response.json().get("tx_hash")
        if not tx_hash:
            raise LedgerError(
                f"Ledger response for escrow {escrow_id} carried no tx_hash",
                retryable=False,
            )
        logger.info("ledger.settlement_complete", escrow_id=escrow_id, tx_hash=tx_hash)
        return SettlementReceipt(escrow_id=escrow_id, tx_hash=tx_hash)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def _log_retry(retry_state: RetryCallState) -> None:
    error = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "ledger.settlement_retry",
        attempt=retry_state.attempt_number,
        error=str(error),
    )


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, LedgerError) and exc.retryable


async def settle_with_retry(
    ledger: LedgerService,
    escrow_id: str,
    source_key: str,
    max_attempts: int = 3,
    backoff_base: float = 1.0,
    backoff_max: float = 10.0,
) -> SettlementReceipt:
    """Call ``ledger.settle`` with bounded retries on retryable LedgerError.

    Raises:
        LedgerError: The last failure, once attempts are exhausted or the
            error is not retryable.
    """
    async for attempt in AsyncRetrying(
        retry=retry_if_exception(_is_retryable),
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=backoff_base, max=backoff_max),
        before_sleep=_log_retry,
        reraise=True,
    ):
        with attempt:
            return await ledger.settle(escrow_id, source_key)
    raise AssertionError("unreachable")  # pragma: no cover


def build_ledger_service() -> LedgerService:
    """Ledger selected by ``settings.ledger_mode``."""
    settings = get_settings()
    if settings.ledger_mode == "http":
        return HttpLedgerService()
    return SimulatedLedgerService()
