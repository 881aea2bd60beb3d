"""Pydantic input schemas and the validation bridge to domain errors."""

from __future__ import annotations

from typing import TypeVar

import pydantic

from vaultix_escrow.domain.exceptions import ValidationError
from vaultix_escrow.schemas.escrow import (
    ConditionSpec,
    CreateEscrowSpec,
    PartySpec,
    UpdateEscrowPatch,
)
from vaultix_escrow.schemas.webhook import WebhookSubscriptionSpec

ModelT = TypeVar("ModelT", bound=pydantic.BaseModel)


def parse_input(model: type[ModelT], data: ModelT | dict) -> ModelT:
    """Coerce ``data`` into ``model``, raising the domain ValidationError."""
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except pydantic.ValidationError as exc:
        errors = exc.errors(include_url=False, include_context=False)
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in errors)
        raise ValidationError(f"Invalid {model.__name__}: {fields}", errors=errors) from exc


__all__ = [
    "ConditionSpec",
    "CreateEscrowSpec",
    "PartySpec",
    "UpdateEscrowPatch",
    "WebhookSubscriptionSpec",
    "parse_input",
]
