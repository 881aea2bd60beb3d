"""Tests for WebhookDispatcher delivery, retries and signing.

HTTP is mocked with respx; backoff sleeps are recorded instead of awaited.
"""

from __future__ import annotations

import json

import httpx
import pytest
import respx
from conftest import BUYER
from structlog.testing import capture_logs

from vaultix_escrow.domain.enums import WebhookEvent
from vaultix_escrow.services.webhook_dispatcher import (
    encode_envelope,
    sign_payload,
    verify_signature,
)

HOOK_URL = "https://hooks.example.com/escrow"
OTHER_URL = "https://other.example.com/hook"
SECRET = "whsec_0123456789abcdef"


@pytest.fixture
def subscribe(core):
    async def _subscribe(url: str = HOOK_URL, events: list[str] | None = None):
        return await core.subscriptions.create(
            BUYER,
            {"url": url, "events": events or ["escrow.created"], "secret": SECRET},
        )

    return _subscribe


class TestSigning:
    def test_signature_round_trip(self) -> None:
        body = encode_envelope({"event": "escrow.created", "data": {"a": 1}, "timestamp": "t"})
        signature = sign_payload(SECRET, body)
        assert len(signature) == 64
        assert verify_signature(SECRET, body, signature)

    def test_tampered_body_fails(self) -> None:
        body = b'{"event":"escrow.created"}'
        signature = sign_payload(SECRET, body)
        assert not verify_signature(SECRET, body + b" ", signature)
        assert not verify_signature("another-secret-value", body, signature)

    def test_encoding_is_compact_and_stable(self) -> None:
        assert encode_envelope({"b": 1, "a": 2}) == b'{"a":2,"b":1}'


class TestDelivery:
    @pytest.mark.asyncio
    async def test_signed_envelope_delivered(
        self, core, dispatcher, subscribe, escrow_spec, clock
    ) -> None:
        await subscribe()
        with respx.mock:
            route = respx.post(HOOK_URL).mock(return_value=httpx.Response(200))
            escrow = await core.engine.create(escrow_spec, creator_id=BUYER)
            await dispatcher.drain()

        assert route.call_count == 1
        request = route.calls.last.request
        assert verify_signature(SECRET, request.content, request.headers["X-Signature"])
        envelope = json.loads(request.content)
        assert set(envelope) == {"event", "data", "timestamp"}
        assert envelope["event"] == "escrow.created"
        assert envelope["data"]["escrow_id"] == str(escrow.id)
        assert envelope["timestamp"] == clock.now().isoformat()

    @pytest.mark.asyncio
    async def test_dispatch_does_not_wait_for_delivery(self, dispatcher, subscribe) -> None:
        await subscribe()
        with respx.mock:
            route = respx.post(HOOK_URL).mock(return_value=httpx.Response(204))
            scheduled = await dispatcher.dispatch(WebhookEvent.ESCROW_CREATED, {"x": 1})

            assert scheduled == 1
            assert dispatcher.pending == 1
            assert route.call_count == 0

            await dispatcher.drain()

        assert dispatcher.pending == 0
        assert route.call_count == 1

    @pytest.mark.asyncio
    async def test_only_matching_active_subscriptions(self, core, dispatcher, subscribe) -> None:
        await subscribe(HOOK_URL, ["escrow.released"])
        inactive = await subscribe(OTHER_URL, ["escrow.created"])
        await core.subscriptions.deactivate(BUYER, inactive.id)

        with respx.mock:
            scheduled = await dispatcher.dispatch(WebhookEvent.ESCROW_CREATED, {})

        assert scheduled == 0

    @pytest.mark.asyncio
    async def test_down_endpoint_gets_five_attempts(
        self, dispatcher, subscribe, sleeper
    ) -> None:
        await subscribe()
        with respx.mock, capture_logs() as logs:
            route = respx.post(HOOK_URL).mock(return_value=httpx.Response(503))
            await dispatcher.dispatch(WebhookEvent.ESCROW_CREATED, {})
            await dispatcher.drain()

        assert route.call_count == 5
        assert sleeper.delays == [2, 4, 8, 16]
        failures = [entry for entry in logs if entry["event"] == "webhook.delivery_failed"]
        assert len(failures) == 1
        assert failures[0]["attempts"] == 5

    @pytest.mark.asyncio
    async def test_transport_errors_are_retried(self, dispatcher, subscribe, sleeper) -> None:
        await subscribe()
        with respx.mock:
            route = respx.post(HOOK_URL).mock(side_effect=httpx.ConnectError("refused"))
            await dispatcher.dispatch(WebhookEvent.ESCROW_CREATED, {})
            await dispatcher.drain()

        assert route.call_count == 5
        assert sleeper.delays == [2, 4, 8, 16]

    @pytest.mark.asyncio
    async def test_recovers_mid_retry(self, dispatcher, subscribe, sleeper) -> None:
        await subscribe()
        with respx.mock:
            route = respx.post(HOOK_URL).mock(
                side_effect=[
                    httpx.Response(500),
                    httpx.Response(500),
                    httpx.Response(200),
                ]
            )
            await dispatcher.dispatch(WebhookEvent.ESCROW_CREATED, {})
            await dispatcher.drain()

        assert route.call_count == 3
        assert sleeper.delays == [2, 4]

    @pytest.mark.asyncio
    async def test_failing_subscriber_does_not_affect_others(
        self, dispatcher, subscribe
    ) -> None:
        await subscribe(HOOK_URL)
        await subscribe(OTHER_URL)
        with respx.mock:
            down = respx.post(HOOK_URL).mock(return_value=httpx.Response(500))
            up = respx.post(OTHER_URL).mock(return_value=httpx.Response(200))
            scheduled = await dispatcher.dispatch(WebhookEvent.ESCROW_CREATED, {})
            await dispatcher.drain()

        assert scheduled == 2
        assert down.call_count == 5
        assert up.call_count == 1

    @pytest.mark.asyncio
    async def test_workflow_unaffected_by_dead_endpoint(
        self, core, dispatcher, subscribe, escrow_spec
    ) -> None:
        await subscribe()
        with respx.mock:
            respx.post(HOOK_URL).mock(side_effect=httpx.ConnectTimeout("slow"))
            escrow = await core.engine.create(escrow_spec, creator_id=BUYER)
            await dispatcher.drain()

        assert (await core.engine.get(escrow.id)).title == escrow_spec["title"]

    @pytest.mark.asyncio
    async def test_semaphores_dropped_after_delivery(self, dispatcher, subscribe) -> None:
        await subscribe(HOOK_URL)
        await subscribe(OTHER_URL)
        seen_in_flight: list[int] = []

        def respond(request: httpx.Request) -> httpx.Response:
            seen_in_flight.append(dispatcher.tracked_subscriptions)
            return httpx.Response(200)

        with respx.mock:
            respx.post(HOOK_URL).mock(side_effect=respond)
            respx.post(OTHER_URL).mock(side_effect=[httpx.Response(500), httpx.Response(200)])
            await dispatcher.dispatch(WebhookEvent.ESCROW_CREATED, {})
            await dispatcher.drain()

        assert seen_in_flight and all(count >= 1 for count in seen_in_flight)
        assert dispatcher.tracked_subscriptions == 0
