"""Webhook subscription management.

Subscriptions belong to a user and are independent of any escrow. The
dispatcher reads the active ones on every dispatch, so changes take effect
for the next event.
"""

from __future__ import annotations

import secrets
import uuid
from typing import TYPE_CHECKING

from vaultix_escrow.domain.exceptions import ForbiddenError, WebhookNotFoundError
from vaultix_escrow.infrastructure.database.orm_models import WebhookSubscription
from vaultix_escrow.infrastructure.database.repositories import WebhookRepository
from vaultix_escrow.logging_config import get_logger
from vaultix_escrow.schemas import WebhookSubscriptionSpec, parse_input

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from vaultix_escrow.domain.clock import Clock

logger = get_logger(__name__)


class WebhookSubscriptionService:
    """Create, list, deactivate and delete subscriber endpoints."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Clock,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock

    async def create(
        self,
        user_id: str,
        spec: WebhookSubscriptionSpec | dict,
    ) -> WebhookSubscription:
        """Register an endpoint. A secret is generated when none is given.

        Raises:
            ValidationError: Bad URL or an unknown event name.
        """
        spec = parse_input(WebhookSubscriptionSpec, spec)
        subscription = WebhookSubscription(
            user_id=user_id,
            url=str(spec.url),
            secret=spec.secret or secrets.token_hex(32),
            events=sorted({event.value for event in spec.events}),
            is_active=True,
            created_at=self._clock.now(),
        )
        async with self._session_factory() as session, session.begin():
            await WebhookRepository(session).create(subscription)

        logger.info(
            "webhook.subscription_created",
            subscription_id=str(subscription.id),
            user_id=user_id,
            events=subscription.events,
        )
        return subscription

    async def list_for_user(self, user_id: str) -> list[WebhookSubscription]:
        async with self._session_factory() as session:
            return await WebhookRepository(session).list_for_user(user_id)

    async def deactivate(
        self,
        user_id: str,
        subscription_id: uuid.UUID | str,
    ) -> WebhookSubscription:
        """Stop deliveries to an endpoint without deleting it."""
        async with self._session_factory() as session, session.begin():
            subscription = await self._owned(WebhookRepository(session), user_id, subscription_id)
            subscription.is_active = False

        logger.info("webhook.subscription_deactivated", subscription_id=str(subscription.id))
        return subscription

    async def delete(self, user_id: str, subscription_id: uuid.UUID | str) -> None:
        async with self._session_factory() as session, session.begin():
            repo = WebhookRepository(session)
            subscription = await self._owned(repo, user_id, subscription_id)
            await repo.delete(subscription)

        logger.info("webhook.subscription_deleted", subscription_id=str(subscription_id))

    @staticmethod
    async def _owned(
        repo: WebhookRepository,
        user_id: str,
        subscription_id: uuid.UUID | str,
    ) -> WebhookSubscription:
        try:
            key = (
                subscription_id
                if isinstance(subscription_id, uuid.UUID)
                else uuid.UUID(str(subscription_id))
            )
        except ValueError as err:
            raise WebhookNotFoundError(str(subscription_id)) from err

        subscription = await repo.get_by_id(key)
        if subscription is None:
            raise WebhookNotFoundError(str(subscription_id))
        if subscription.user_id != user_id:
            raise ForbiddenError("Webhook subscription belongs to another user")
        return subscription
