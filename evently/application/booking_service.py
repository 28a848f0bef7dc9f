import logging

from sqlalchemy.orm import Session, sessionmaker

from evently.application.idempotency import IdempotentConsumer
from evently.application.outbox import OutboxPublisher
from evently.domain.clock import Clock, utc_now
from evently.domain.events import (
    BOOKING_SERVICE,
    BookingChangedPayload,
    BookingCreatedPayload,
    EventEnvelope,
    EventType,
    PaymentOutcomePayload,
)
from evently.domain.exceptions import NotFoundError, ValidationError
from evently.domain.state_machine import BookingStateMachine, BookingStatus
from evently.infrastructure.db.models import Booking
from evently.infrastructure.db.session import session_scope
from evently.infrastructure.repositories.booking_repository import BookingRepository
from evently.infrastructure.repositories.outbox_repository import OutboxRepository

logger = logging.getLogger(__name__)

AGGREGATE_TYPE = "booking"

_OUTCOME_TARGETS = {
    EventType.PAYMENT_SUCCESS: BookingStatus.CONFIRMED,
    EventType.PAYMENT_FAILED: BookingStatus.FAILED,
}


class BookingService:
    """Application service owning the booking lifecycle."""

    def __init__(
        self,
        session_factory: sessionmaker,
        publisher: OutboxPublisher,
        clock: Clock = utc_now,
    ):
        self._session_factory = session_factory
        self._publisher = publisher
        self._clock = clock
        self._consumer = IdempotentConsumer(BOOKING_SERVICE, session_factory)

    def create(
        self,
        user_id: str,
        event_id: str,
        seats: int,
    ) -> Booking:
        if not user_id or not event_id:
            raise ValidationError("user_id and event_id are required")
        if isinstance(seats, bool) or not isinstance(seats, int) or seats < 1:
            raise ValidationError("seats must be an integer >= 1")

        now = self._clock()
        with session_scope(self._session_factory) as db:
            booking = BookingRepository(db).create_booking(
                user_id=user_id,
                event_id=event_id,
                seat_count=seats,
                now=now,
            )
            self._record_event(
                db,
                booking,
                EventType.BOOKING_CREATED,
                BookingCreatedPayload(
                    booking_id=booking.id,
                    user_id=booking.user_id,
                    event_id=booking.event_id,
                    seats=booking.seat_count,
                ),
            )

        logger.info(
            "Booking created. booking_id=%s user_id=%s event_id=%s seats=%s",
            booking.id,
            user_id,
            event_id,
            seats,
        )
        self._publisher.publish_aggregate(AGGREGATE_TYPE, booking.id)
        return booking

    def get(self, booking_id: str) -> Booking:
        with session_scope(self._session_factory) as db:
            booking = BookingRepository(db).get_by_id(booking_id)
        if booking is None:
            raise NotFoundError("Booking", booking_id)
        return booking

    def list_for_user(self, user_id: str, limit: int = 50) -> list[Booking]:
        with session_scope(self._session_factory) as db:
            return BookingRepository(db).list_by_user(user_id, limit=limit)

    def list_for_event(self, event_id: str, limit: int = 50) -> list[Booking]:
        with session_scope(self._session_factory) as db:
            return BookingRepository(db).list_by_event(event_id, limit=limit)

    def cancel(self, booking_id: str) -> Booking:
        return self._apply_direct(booking_id, BookingStatus.CANCELLED)

    def confirm(self, booking_id: str, payment_ref: str) -> Booking:
        if not payment_ref:
            raise ValidationError("payment_ref is required to confirm a booking")
        return self._apply_direct(booking_id, BookingStatus.CONFIRMED, payment_ref=payment_ref)

    def fail(self, booking_id: str, reason: str | None = None) -> Booking:
        return self._apply_direct(booking_id, BookingStatus.FAILED, reason=reason)

    def on_payment_outcome(self, envelope: EventEnvelope) -> None:
        """
        Consumer for payment.success / payment.failed.
        Redeliveries and late arrivals on a terminal booking are no-ops.
        """
        target = _OUTCOME_TARGETS.get(envelope.event_type)
        if target is None:
            logger.debug("Ignoring %s", envelope.dedupe_key)
            return

        payload = envelope.payload_as(PaymentOutcomePayload)
        changed: list[str] = []

        def mutate(db: Session) -> None:
            booking = BookingRepository(db).get_for_update(payload.booking_id)
            if booking is None:
                raise NotFoundError("Booking", payload.booking_id)
            if self._transition(
                db,
                booking,
                target,
                payment_ref=payload.gateway_payment_id or payload.payment_id,
                reason=payload.failure_reason,
                strict=False,
            ):
                changed.append(booking.id)

        if self._consumer.process(envelope, mutate) and changed:
            self._publisher.publish_aggregate(AGGREGATE_TYPE, payload.booking_id)

    def _apply_direct(
        self,
        booking_id: str,
        to_status: BookingStatus,
        payment_ref: str | None = None,
        reason: str | None = None,
    ) -> Booking:
        with session_scope(self._session_factory) as db:
            booking = BookingRepository(db).get_for_update(booking_id)
            if booking is None:
                raise NotFoundError("Booking", booking_id)
            changed = self._transition(
                db,
                booking,
                to_status,
                payment_ref=payment_ref,
                reason=reason,
                strict=True,
            )

        if changed:
            self._publisher.publish_aggregate(AGGREGATE_TYPE, booking.id)
        return booking

    def _transition(
        self,
        db: Session,
        booking: Booking,
        to_status: BookingStatus,
        payment_ref: str | None,
        reason: str | None,
        strict: bool,
    ) -> bool:
        """
        Applies one transition and records booking.changed.
        Returns False when the booking already is in (or past) the target.
        With strict=False an illegal transition is logged and skipped instead of raised.
        """
        current = booking.status
        if current == to_status:
            return False

        if not BookingStateMachine.can_transition(current, to_status):
            if strict:
                BookingStateMachine.validate_transition(current, to_status)
            logger.info(
                "Booking %s is %s; ignoring transition to %s",
                booking.id,
                current.value,
                to_status.value,
            )
            return False

        if to_status is BookingStatus.CONFIRMED and not payment_ref:
            raise ValidationError("CONFIRMED requires a payment reference")

        BookingRepository(db).update_status(
            booking,
            to_status,
            now=self._clock(),
            payment_ref=payment_ref if to_status is BookingStatus.CONFIRMED else None,
        )
        self._record_event(
            db,
            booking,
            EventType.BOOKING_CHANGED,
            BookingChangedPayload(
                booking_id=booking.id,
                user_id=booking.user_id,
                event_id=booking.event_id,
                seats=booking.seat_count,
                status=to_status,
                previous_status=current,
                payment_ref=booking.payment_ref,
                reason=reason,
            ),
        )
        logger.info(
            "Booking %s transitioned %s -> %s",
            booking.id,
            current.value,
            to_status.value,
        )
        return True

    def _record_event(self, db: Session, booking: Booking, event_type: EventType, payload) -> None:
        envelope = EventEnvelope.build(
            event_type=event_type,
            source=BOOKING_SERVICE,
            aggregate_id=booking.id,
            sequence=booking.version,
            payload=payload,
            occurred_at=booking.updated_at,
        )
        OutboxRepository(db, BOOKING_SERVICE).add(AGGREGATE_TYPE, envelope)
