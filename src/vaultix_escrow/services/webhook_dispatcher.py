"""Webhook Dispatcher: signed, at-least-once delivery of lifecycle events.

``dispatch`` never waits for delivery. Each matching subscription gets its
own background task that POSTs the envelope and retries with exponential
backoff. A per-subscription semaphore bounds how many requests are in flight
against one endpoint; it is held only around the HTTP call, never while
waiting to retry, so a slow subscriber cannot block others.

Envelope:
    {"event": "escrow.released", "data": {...}, "timestamp": "2026-...Z"}

The body is signed with HMAC-SHA256 using the subscription secret and the
hex digest is sent in the ``X-Signature`` header.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING

import httpx

from vaultix_escrow.domain.clock import SystemClock
from vaultix_escrow.infrastructure.database.repositories import WebhookRepository
from vaultix_escrow.logging_config import get_logger
from vaultix_escrow.services.event_log import to_json_data

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from vaultix_escrow.domain.clock import Clock
    from vaultix_escrow.domain.enums import WebhookEvent

    EnvelopeListener = Callable[[dict], None]

logger = get_logger(__name__)


def encode_envelope(envelope: dict) -> bytes:
    """Serialize an envelope to the exact bytes that are signed and sent."""
    return json.dumps(envelope, separators=(",", ":"), sort_keys=True, default=str).encode()


def sign_payload(secret: str, body: bytes) -> str:
    """Hex HMAC-SHA256 of ``body`` keyed by ``secret``."""
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_signature(secret: str, body: bytes, signature: str) -> bool:
    """Constant-time check of a received ``X-Signature`` header."""
    return hmac.compare_digest(sign_payload(secret, body), signature)


@dataclass(frozen=True)
class WebhookTarget:
    """Detached snapshot of a subscription, safe to use after its session closes."""

    subscription_id: str
    url: str
    secret: str


class WebhookDispatcher:
    """Fans events out to subscriber endpoints."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        client: httpx.AsyncClient | None = None,
        *,
        timeout: float = 5.0,
        max_attempts: int = 5,
        backoff_base: float = 1.0,
        max_concurrency_per_subscription: int = 4,
        signature_header: str = "X-Signature",
        clock: Clock | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._session_factory = session_factory
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._timeout = timeout
        self._max_attempts = max_attempts
        self._backoff_base = backoff_base
        self._max_concurrency = max_concurrency_per_subscription
        self._signature_header = signature_header
        self._clock = clock or SystemClock()
        self._sleep = sleep
        self._semaphores: dict[str, asyncio.Semaphore] = {}
        self._semaphore_users: dict[str, int] = {}
        self._tasks: set[asyncio.Task] = set()
        self._listeners: list[EnvelopeListener] = []

    def add_listener(self, callback: EnvelopeListener) -> None:
        """Observe every envelope as it is queued (outbound payload stream)."""
        self._listeners.append(callback)

    @property
    def pending(self) -> int:
        """Deliveries still in flight or waiting to retry."""
        return len(self._tasks)

    @property
    def tracked_subscriptions(self) -> int:
        """Subscriptions with a live concurrency semaphore."""
        return len(self._semaphores)

    async def dispatch(self, event: WebhookEvent, data: dict) -> int:
        """Queue ``event`` for every active subscription that wants it.

        Returns:
            The number of deliveries scheduled.
        """
        envelope = {
            "event": str(event),
            "data": to_json_data(data),
            "timestamp": self._clock.now().isoformat(),
        }
        for listener in self._listeners:
            try:
                listener(envelope)
            except Exception:
                logger.exception("webhook.listener_failed", webhook_event=str(event))

        async with self._session_factory() as session:
            subscriptions = await WebhookRepository(session).list_active()
            targets = [
                WebhookTarget(str(sub.id), sub.url, sub.secret)
                for sub in subscriptions
                if str(event) in (sub.events or [])
            ]

        body = encode_envelope(envelope)
        for target in targets:
            task = asyncio.create_task(
                self._run_delivery(target, str(event), body),
                name=f"webhook:{target.subscription_id}",
            )
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        logger.debug("webhook.dispatched", webhook_event=str(event), subscriptions=len(targets))
        return len(targets)

    async def deliver(self, target: WebhookTarget, event: str, body: bytes) -> bool:
        """POST ``body`` to one subscriber, retrying on failure.

        Before attempt ``n + 1`` the dispatcher waits ``2**n * backoff_base``
        seconds. Returns True once a 2xx response is received.
        """
        headers = {
            "Content-Type": "application/json",
            self._signature_header: sign_payload(target.secret, body),
            "X-Webhook-Event": event,
        }
        error = None
        async with self._subscription_semaphore(target.subscription_id) as semaphore:
            for attempt in range(1, self._max_attempts + 1):
                try:
                    async with semaphore:
                        response = await self._client.post(
                            target.url,
                            content=body,
                            headers=headers,
                            timeout=self._timeout,
                        )
                    if response.is_success:
                        logger.info(
                            "webhook.delivered",
                            subscription_id=target.subscription_id,
                            webhook_event=event,
                            attempt=attempt,
                            status_code=response.status_code,
                        )
                        return True
                    error = f"HTTP {response.status_code}"
                except httpx.HTTPError as exc:
                    error = f"{type(exc).__name__}: {exc}"

                if attempt < self._max_attempts:
                    delay = (2**attempt) * self._backoff_base
                    logger.warning(
                        "webhook.delivery_retry",
                        subscription_id=target.subscription_id,
                        webhook_event=event,
                        attempt=attempt,
                        retry_in=delay,
                        error=error,
                    )
                    await self._sleep(delay)

        logger.error(
            "webhook.delivery_failed",
            subscription_id=target.subscription_id,
            url=target.url,
            webhook_event=event,
            attempts=self._max_attempts,
            error=error,
        )
        return False

    async def drain(self) -> None:
        """Wait until every scheduled delivery has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        """Drain deliveries, then close the HTTP client if we created it."""
        await self.drain()
        if self._owns_client:
            await self._client.aclose()

    async def _run_delivery(self, target: WebhookTarget, event: str, body: bytes) -> None:
        try:
            await self.deliver(target, event, body)
        except Exception:
            logger.exception(
                "webhook.delivery_crashed",
                subscription_id=target.subscription_id,
                webhook_event=event,
            )

    @asynccontextmanager
    async def _subscription_semaphore(
        self, subscription_id: str
    ) -> AsyncIterator[asyncio.Semaphore]:
        """Shared semaphore for one subscription, dropped once no delivery uses it."""
        semaphore = self._semaphores.setdefault(
            subscription_id, asyncio.Semaphore(self._max_concurrency)
        )
        self._semaphore_users[subscription_id] = self._semaphore_users.get(subscription_id, 0) + 1
        try:
            yield semaphore
        finally:
            self._semaphore_users[subscription_id] -= 1
            if self._semaphore_users[subscription_id] == 0:
                del self._semaphore_users[subscription_id]
                del self._semaphores[subscription_id]
