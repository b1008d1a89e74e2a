from datetime import datetime, timezone
from typing import Any, Generic, TypeVar

import pydantic
from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator

from esim_sync.exceptions import ESIMSyncError, ValidationError

T = TypeVar("T")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# --- Inbound "order paid" event ---

class LineItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    sku: str | None = None
    quantity: int = 1


class OrderPaidEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    email: str
    line_items: list[LineItem]

    @field_validator("id", mode="before")
    @classmethod
    def _stringify_id(cls, value):
        return str(value) if value is not None else value

    @property
    def sku(self) -> str:
        """SKU of the line item that gets provisioned (the first one)."""
        return self.line_items[0].sku

    @classmethod
    def parse(cls, payload: Any) -> "OrderPaidEvent":
        """Validates a storefront order webhook body.

        Raises ValidationError when the order id, the email or the SKU of the
        first line item is missing.
        """
        if not isinstance(payload, dict):
            raise ValidationError("Order payload must be a JSON object")

        customer = payload.get("customer") or {}
        data = {
            "id": payload.get("id"),
            "email": payload.get("email") or payload.get("contact_email") or customer.get("email"),
            "line_items": payload.get("line_items") or [],
        }
        try:
            event = cls.model_validate(data)
        except pydantic.ValidationError as e:
            fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
            raise ValidationError(f"Invalid order payload: {fields}") from e

        if not event.id or not event.email:
            raise ValidationError("Invalid order payload: missing order id or email")
        if not event.line_items:
            raise ValidationError("Invalid order payload: no line items")
        if not event.sku:
            raise ValidationError("Invalid order payload: missing SKU")
        return event


# --- Persisted state ---

class PendingOrder(BaseModel):
    """An order whose provisioning was requested but not yet delivered."""
    id: int | None = None
    provider_order_code: str
    provider_order_id: str | None = None
    destination_order_id: str
    customer_email: str
    sku: str
    product_id: str | None = None
    attempts: int = 0
    last_error: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    last_attempt: datetime | None = None


# --- Provider payloads ---

class ActivationArtifact(BaseModel):
    image_url: str | None = None
    lpa_code: str | None = None

    @property
    def is_empty(self) -> bool:
        return not (self.image_url or self.lpa_code)


class OrderLookup(BaseModel):
    internal_id: str
    status: str | None = None


# --- Outcomes of provider calls ---

class Ready(BaseModel, Generic[T]):
    value: T


class Pending(BaseModel):
    reason: str = ""


class Failed(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    error: ESIMSyncError

    @property
    def reason(self) -> str:
        return str(self.error)


Outcome = Ready | Pending | Failed


# --- Summaries returned by entry points ---

class FulfillmentResult(BaseModel):
    status: str  # delivered | parked | delivery_failed | rejected
    order_code: str
    provider_order_id: str | None = None
    destination_order_id: str | None = None
    email_sent: bool = False


class RecoverySummary(BaseModel):
    processed: int = 0
    delivered: int = 0
    still_pending: int = 0
    failed: int = 0
    dead_lettered: int = 0


class CatalogSummary(BaseModel):
    """Titles (handles for removals) per outcome, plus their counts."""
    created: list[str] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)
    removed: list[str] = Field(default_factory=list)

    @computed_field
    @property
    def counts(self) -> dict[str, int]:
        return {
            "created": len(self.created),
            "skipped": len(self.skipped),
            "failed": len(self.failed),
            "removed": len(self.removed),
        }
