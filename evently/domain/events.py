"""Event contracts carried on the bus.

One topic per event type; the partition key is always the aggregate id so
the bus delivers envelopes for one booking or payment in order.

Envelope identity is ``(event_type, aggregate_id, sequence)``. Consumers use
it as the dedup key in their processed-event ledger.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Type, TypeVar
from uuid import uuid4

from pydantic import BaseModel, Field

from evently.domain.state_machine import BookingStatus, PaymentStatus


class EventType(str, Enum):
    BOOKING_CREATED = "booking.created"
    BOOKING_CHANGED = "booking.changed"
    PAYMENT_SUCCESS = "payment.success"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_REFUND = "payment.refund"

    @property
    def topic(self) -> str:
        return self.value


BOOKING_SERVICE = "booking-service"
PAYMENT_SERVICE = "payment-service"
NOTIFICATION_SERVICE = "notification-service"

PayloadT = TypeVar("PayloadT", bound=BaseModel)


class BookingCreatedPayload(BaseModel):
    booking_id: str
    user_id: str
    event_id: str
    seats: int = Field(ge=1)


class BookingChangedPayload(BaseModel):
    booking_id: str
    user_id: str
    event_id: str
    seats: int = Field(ge=1)
    status: BookingStatus
    previous_status: BookingStatus
    payment_ref: str | None = None
    reason: str | None = None


class PaymentOutcomePayload(BaseModel):
    """Shared payload for payment.success, payment.failed and payment.refund."""

    payment_id: str
    booking_id: str
    user_id: str
    event_id: str
    amount: Decimal
    currency: str
    status: PaymentStatus
    order_id: str | None = None
    gateway_payment_id: str | None = None
    failure_reason: str | None = None
    settled_at: datetime | None = None


class EventEnvelope(BaseModel):
    event_id: str = Field(default_factory=lambda: str(uuid4()))
    event_type: EventType
    source: str
    aggregate_id: str
    sequence: int = Field(ge=1)
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    payload: dict[str, Any]

    @classmethod
    def build(
        cls,
        event_type: EventType,
        source: str,
        aggregate_id: str,
        sequence: int,
        payload: BaseModel,
        occurred_at: datetime | None = None,
    ) -> "EventEnvelope":
        fields: dict[str, Any] = {
            "event_type": event_type,
            "source": source,
            "aggregate_id": aggregate_id,
            "sequence": sequence,
            "payload": payload.model_dump(mode="json"),
        }
        if occurred_at is not None:
            fields["occurred_at"] = occurred_at
        return cls(**fields)

    @property
    def identity(self) -> tuple[str, str, int]:
        return (self.event_type.value, self.aggregate_id, self.sequence)

    @property
    def dedupe_key(self) -> str:
        return f"{self.event_type.value}:{self.aggregate_id}:{self.sequence}"

    @property
    def topic(self) -> str:
        return self.event_type.topic

    def payload_as(self, model: Type[PayloadT]) -> PayloadT:
        return model.model_validate(self.payload)

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, raw: str | bytes) -> "EventEnvelope":
        return cls.model_validate_json(raw)
