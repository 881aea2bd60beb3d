"""Pydantic schemas for webhook subscriptions."""

from __future__ import annotations

from pydantic import BaseModel, Field, HttpUrl

from vaultix_escrow.domain.enums import WebhookEvent


class WebhookSubscriptionSpec(BaseModel):
    """Input for registering a subscriber endpoint.

    ``secret`` is generated when omitted; it is returned once on the created
    subscription so the subscriber can verify ``X-Signature`` headers.
    """

    url: HttpUrl
    events: list[WebhookEvent] = Field(..., min_length=1)
    secret: str | None = Field(default=None, min_length=16, max_length=255)
