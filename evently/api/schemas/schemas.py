from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field


class BookingRequest(BaseModel):
    event_id: str = Field(min_length=1)
    seats: int = Field(gt=0)
    # Defaults to the caller; acting for someone else needs ACT_FOR_ANY_USER.
    user_id: str | None = None


class BookingConfirmRequest(BaseModel):
    payment_ref: str = Field(min_length=1)


class BookingFailRequest(BaseModel):
    reason: str | None = None


class BookingResponse(BaseModel):
    booking_id: str
    user_id: str
    event_id: str
    seats: int
    status: str
    payment_ref: str | None = None
    created_at: datetime
    updated_at: datetime


class PaymentInitiateRequest(BaseModel):
    booking_id: str = Field(min_length=1)
    event_id: str = Field(min_length=1)
    amount: Decimal = Field(gt=0)
    currency: str = "INR"
    method: str
    user_id: str | None = None


class PaymentInitiateResponse(BaseModel):
    payment_id: str
    booking_id: str
    status: str
    order_id: str | None = None
    amount: Decimal
    currency: str
    key_id: str | None = None


class RazorpayVerifyRequest(BaseModel):
    razorpay_order_id: str
    razorpay_payment_id: str
    razorpay_signature: str


class PaymentFailRequest(BaseModel):
    reason: str | None = None


class WebhookRequest(BaseModel):
    event: str
    payload: dict = Field(default_factory=dict)


class WebhookResponse(BaseModel):
    status: str
    payment_id: str | None = None
    payment_status: str | None = None


class PaymentResponse(BaseModel):
    payment_id: str
    booking_id: str
    user_id: str
    event_id: str
    amount: Decimal
    currency: str
    method: str
    status: str
    order_id: str | None = None
    gateway_payment_id: str | None = None
    failure_reason: str | None = None
    created_at: datetime
    settled_at: datetime | None = None


class OrderStatusResponse(BaseModel):
    order_id: str
    status: str


class NotificationResponse(BaseModel):
    id: str
    user_id: str
    booking_id: str | None = None
    event_id: str | None = None
    notification_type: str
    title: str
    message: str
    recipient: str | None = None
    status: str
    retry_count: int
    error_message: str | None = None
    created_at: datetime
    sent_at: datetime | None = None


class RetrySweepResponse(BaseModel):
    sent: int


class OutboxEventResponse(BaseModel):
    id: str
    source: str
    aggregate_type: str
    aggregate_id: str
    event_type: str
    sequence: int
    status: str
    attempts: int
    last_error: str | None = None
    created_at: str
    published_at: str | None = None
