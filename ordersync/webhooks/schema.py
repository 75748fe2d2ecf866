"""Strict schema for inbound order webhooks.

Unknown keys are ignored (the platform sends far more than we read) but
the keys we do read must have the expected JSON types; nothing is coerced.
Note that an unparseable ``total_price`` string is still a valid payload:
the processor charges the fallback shipping fee for it.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from ordersync.errors import MalformedPayload


class OrderWebhookPayload(BaseModel):
    """The subset of an order webhook body the sync engine consumes."""

    model_config = ConfigDict(strict=True, extra="ignore", frozen=True)

    id: str | int
    updated_at: str | None = None
    financial_status: str | None = None
    fulfillment_status: str | None = None
    total_price: str | int | float | None = None

    @field_validator("id")
    @classmethod
    def _id_not_blank(cls, value: str | int) -> str | int:
        if isinstance(value, str) and not value.strip():
            raise ValueError("id must not be blank")
        return value

    @property
    def external_order_id(self) -> str:
        return str(self.id)


def parse_payload(payload: Any) -> OrderWebhookPayload:
    """Validate a decoded JSON body. Raises MalformedPayload on any mismatch."""
    if not isinstance(payload, dict):
        raise MalformedPayload(f"payload must be a JSON object, got {type(payload).__name__}")
    try:
        return OrderWebhookPayload.model_validate(payload)
    except ValidationError as exc:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in exc.errors())
        raise MalformedPayload(f"invalid fields: {fields}") from exc
