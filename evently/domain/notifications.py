"""User-facing messages derived from booking and payment events."""

from dataclasses import dataclass
from enum import Enum

from evently.domain.events import (
    BookingChangedPayload,
    BookingCreatedPayload,
    EventEnvelope,
    EventType,
    PaymentOutcomePayload,
)
from evently.domain.state_machine import BookingStatus


class NotificationType(str, Enum):
    EMAIL = "EMAIL"
    SMS = "SMS"
    IN_APP = "IN_APP"


class NotificationStatus(str, Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"


@dataclass(frozen=True)
class NotificationMessage:
    user_id: str
    recipient: str
    subject: str
    body: str
    booking_id: str | None = None
    event_id: str | None = None
    notification_type: NotificationType = NotificationType.EMAIL


def recipient_for(user_id: str) -> str:
    # Address lookup belongs to the delivery collaborator.
    return f"user:{user_id}"


_BOOKING_CHANGED_SUBJECTS = {
    BookingStatus.CONFIRMED: "Booking confirmed",
    BookingStatus.FAILED: "Event booking failed.",
    BookingStatus.CANCELLED: "Booking cancelled",
}


def render_message(envelope: EventEnvelope) -> NotificationMessage | None:
    """Returns the message for an envelope, or None when it warrants none."""
    if envelope.event_type is EventType.BOOKING_CREATED:
        created = envelope.payload_as(BookingCreatedPayload)
        return NotificationMessage(
            user_id=created.user_id,
            recipient=recipient_for(created.user_id),
            subject="Booking received",
            body=(
                f"Your booking {created.booking_id} for event {created.event_id} "
                f"({created.seats} seat(s)) is awaiting payment."
            ),
            booking_id=created.booking_id,
            event_id=created.event_id,
        )

    if envelope.event_type is EventType.BOOKING_CHANGED:
        changed = envelope.payload_as(BookingChangedPayload)
        subject = _BOOKING_CHANGED_SUBJECTS.get(changed.status)
        if subject is None:
            return None
        if changed.status is BookingStatus.CONFIRMED:
            body = (
                f"Your booking {changed.booking_id} for event {changed.event_id} "
                f"is confirmed. Payment reference: {changed.payment_ref}."
            )
        elif changed.status is BookingStatus.FAILED:
            body = (
                f"Your booking {changed.booking_id} for event {changed.event_id} "
                f"could not be completed."
            )
            if changed.reason:
                body += f" Reason: {changed.reason}."
        else:
            body = f"Your booking {changed.booking_id} for event {changed.event_id} was cancelled."
        return NotificationMessage(
            user_id=changed.user_id,
            recipient=recipient_for(changed.user_id),
            subject=subject,
            body=body,
            booking_id=changed.booking_id,
            event_id=changed.event_id,
        )

    if envelope.event_type is EventType.PAYMENT_SUCCESS:
        payment = envelope.payload_as(PaymentOutcomePayload)
        return NotificationMessage(
            user_id=payment.user_id,
            recipient=recipient_for(payment.user_id),
            subject="Payment received",
            body=(
                f"We received {payment.amount} {payment.currency} "
                f"for booking {payment.booking_id}."
            ),
            booking_id=payment.booking_id,
            event_id=payment.event_id,
        )

    if envelope.event_type is EventType.PAYMENT_FAILED:
        payment = envelope.payload_as(PaymentOutcomePayload)
        reason = payment.failure_reason or "Unknown reason"
        return NotificationMessage(
            user_id=payment.user_id,
            recipient=recipient_for(payment.user_id),
            subject="Payment failed",
            body=(
                f"Your payment of {payment.amount} {payment.currency} "
                f"for booking {payment.booking_id} failed: {reason}."
            ),
            booking_id=payment.booking_id,
            event_id=payment.event_id,
        )

    return None
