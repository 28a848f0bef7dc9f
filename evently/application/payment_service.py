"""Payment lifecycle: order creation, callback settlement, failure and refund.

Settlement is correlated by gateway order id. A callback is applied only
after its HMAC signature checks out; a repeated callback for an already
settled payment returns the stored record unchanged.
"""

import hashlib
import json
import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from evently.application.idempotency import IdempotentConsumer
from evently.application.outbox import OutboxPublisher
from evently.domain.clock import Clock, utc_now
from evently.domain.events import (
    PAYMENT_SERVICE,
    BookingChangedPayload,
    BookingCreatedPayload,
    EventEnvelope,
    EventType,
    PaymentOutcomePayload,
)
from evently.domain.exceptions import (
    ConflictError,
    DuplicatePaymentError,
    EventlyError,
    GatewayUnavailableError,
    NotFoundError,
    SignatureMismatchError,
    StaleCallbackError,
    ValidationError,
)
from evently.domain.payment_method import PaymentMethod
from evently.domain.state_machine import BookingStatus, PaymentStateMachine, PaymentStatus
from evently.infrastructure.db.models import Payment
from evently.infrastructure.db.session import session_scope
from evently.infrastructure.gateway.razorpay_gateway import PROVIDER, PaymentGateway
from evently.infrastructure.repositories.outbox_repository import OutboxRepository
from evently.infrastructure.repositories.payment_repository import (
    BookingReferenceRepository,
    PaymentRepository,
)

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("evently.security")

AGGREGATE_TYPE = "payment"
ORDER_CREATION_FAILED = "ORDER_CREATION_FAILED"

SUCCESS_WEBHOOK_EVENTS = {"payment.authorized", "payment.captured"}
FAILURE_WEBHOOK_EVENT = "payment.failed"


def _hash_callback(order_id: str, gateway_payment_id: str, signature: str) -> str:
    payload = {
        "razorpay_order_id": order_id,
        "razorpay_payment_id": gateway_payment_id,
        "razorpay_signature": signature,
    }
    encoded = json.dumps(payload, sort_keys=True).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()


def _to_minor_units(amount: Decimal) -> int:
    return int((amount * 100).to_integral_value())


class PaymentService:

    def __init__(
        self,
        session_factory: sessionmaker,
        publisher: OutboxPublisher,
        gateway: PaymentGateway,
        clock: Clock = utc_now,
        replay_window_seconds: int = 900,
    ):
        self._session_factory = session_factory
        self._publisher = publisher
        self._gateway = gateway
        self._clock = clock
        self._replay_window_seconds = replay_window_seconds
        self._consumer = IdempotentConsumer(PAYMENT_SERVICE, session_factory)

    @property
    def gateway_key_id(self) -> str:
        return self._gateway.key_id

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def initiate(
        self,
        user_id: str,
        booking_id: str,
        event_id: str,
        amount,
        currency: str,
        method,
    ) -> Payment:
        if not user_id or not booking_id or not event_id:
            raise ValidationError("user_id, booking_id and event_id are required")
        amount = self._parse_amount(amount)
        currency = self._parse_currency(currency)
        try:
            method = PaymentMethod.parse(method)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc

        now = self._clock()
        with session_scope(self._session_factory) as db:
            repo = PaymentRepository(db)
            if repo.get_by_booking_id(booking_id) is not None:
                raise DuplicatePaymentError(booking_id)
            self._check_booking_reference(db, user_id, booking_id, event_id)
            try:
                payment = repo.create_payment(
                    booking_id=booking_id,
                    user_id=user_id,
                    event_id=event_id,
                    amount=amount,
                    currency=currency,
                    method=method,
                    now=now,
                )
            except IntegrityError as exc:
                if "booking_id" in str(exc.orig):
                    raise DuplicatePaymentError(booking_id) from exc
                raise

        logger.info(
            "Payment created. payment_id=%s booking_id=%s amount=%s %s",
            payment.id,
            booking_id,
            amount,
            currency,
        )

        try:
            order_id = self._gateway.create_order(
                amount_minor=_to_minor_units(amount),
                currency=currency,
                receipt=f"receipt_{payment.id}",
                notes={"bookingId": booking_id, "userId": user_id, "eventId": event_id},
            )
        except EventlyError as exc:
            logger.error("Gateway order creation failed. payment_id=%s error=%s", payment.id, exc)
            self._mark_order_failed(payment.id)
            raise

        with session_scope(self._session_factory) as db:
            payment = PaymentRepository(db).get_for_update(payment.id)
            payment.order_id = order_id

        logger.info("Payment order attached. payment_id=%s order_id=%s", payment.id, order_id)
        return payment

    def verify_and_settle(
        self,
        order_id: str,
        gateway_payment_id: str,
        signature: str,
        callback_created_at=None,
    ) -> Payment:
        """
        PENDING -> SUCCESS after the callback signature checks out.
        Fails closed: a mismatch or a stale callback changes nothing. The
        replay window guards only the transition; a redelivered callback for
        a payment already settled with the same gateway id returns it as is.
        """
        if not order_id or not gateway_payment_id or not signature:
            raise ValidationError("order_id, gateway_payment_id and signature are required")

        if not self._gateway.verify_payment_signature(order_id, gateway_payment_id, signature):
            security_logger.warning(
                "Payment signature mismatch. order_id=%s gateway_payment_id=%s",
                order_id,
                gateway_payment_id,
            )
            raise SignatureMismatchError("Invalid payment signature")

        now = self._clock()
        with session_scope(self._session_factory) as db:
            repo = PaymentRepository(db)
            payment = repo.get_by_order_id_for_update(order_id)
            if payment is None:
                raise NotFoundError("Payment", order_id)

            if payment.status is PaymentStatus.SUCCESS:
                if payment.gateway_payment_id == gateway_payment_id:
                    logger.info(
                        "Duplicate success callback. order_id=%s gateway_payment_id=%s",
                        order_id,
                        gateway_payment_id,
                    )
                    return payment
                raise ConflictError("Payment already settled with a different gateway payment id")

            if payment.status is not PaymentStatus.PENDING:
                logger.warning(
                    "Success callback for %s payment ignored. payment_id=%s order_id=%s",
                    payment.status.value,
                    payment.id,
                    order_id,
                )
                return payment

            self._check_replay_window(order_id, callback_created_at)
            PaymentStateMachine.validate_transition(payment.status, PaymentStatus.SUCCESS)
            payment.gateway_payment_id = gateway_payment_id
            payment.settled_at = now
            repo.update_status(payment, PaymentStatus.SUCCESS, now)
            repo.add_callback(
                provider=PROVIDER,
                order_id=order_id,
                gateway_payment_id=gateway_payment_id,
                payment_id=payment.id,
                payload_hash=_hash_callback(order_id, gateway_payment_id, signature),
                outcome=PaymentStatus.SUCCESS.value,
            )
            self._record_event(db, payment, EventType.PAYMENT_SUCCESS)
            try:
                db.flush()
            except IntegrityError as exc:
                raise ConflictError("Gateway payment id already linked with another payment") from exc

        logger.info(
            "Payment settled. payment_id=%s order_id=%s gateway_payment_id=%s",
            payment.id,
            order_id,
            gateway_payment_id,
        )
        self._publisher.publish_aggregate(AGGREGATE_TYPE, payment.id)
        return payment

    def fail(self, order_id: str, reason: str | None = None) -> Payment:
        if not order_id:
            raise ValidationError("order_id is required")
        reason = reason or "Unknown reason"

        with session_scope(self._session_factory) as db:
            payment = PaymentRepository(db).get_by_order_id_for_update(order_id)
            if payment is None:
                raise NotFoundError("Payment", order_id)
            if payment.status is not PaymentStatus.PENDING:
                logger.info(
                    "Failure callback for %s payment ignored. payment_id=%s",
                    payment.status.value,
                    payment.id,
                )
                return payment
            self._apply_failure(db, payment, reason)

        self._publisher.publish_aggregate(AGGREGATE_TYPE, payment.id)
        return payment

    def refund(self, payment_id: str) -> Payment:
        with session_scope(self._session_factory) as db:
            repo = PaymentRepository(db)
            payment = repo.get_for_update(payment_id)
            if payment is None:
                raise NotFoundError("Payment", payment_id)
            if payment.status is PaymentStatus.REFUNDED:
                return payment
            PaymentStateMachine.validate_transition(payment.status, PaymentStatus.REFUNDED)
            repo.update_status(payment, PaymentStatus.REFUNDED, self._clock())
            self._record_event(db, payment, EventType.PAYMENT_REFUND)

        logger.info("Payment refunded. payment_id=%s", payment.id)
        self._publisher.publish_aggregate(AGGREGATE_TYPE, payment.id)
        return payment

    def verify_webhook_signature(self, body: str, signature: str | None) -> None:
        """Webhooks are refused outright while no webhook secret is configured."""
        if not self._gateway.webhook_secret:
            security_logger.error("Webhook rejected: RAZORPAY_WEBHOOK_SECRET is not configured")
            raise GatewayUnavailableError("Webhook verification is not configured")
        if not self._gateway.verify_webhook_signature(body, signature or ""):
            security_logger.warning("Webhook signature mismatch")
            raise SignatureMismatchError("Invalid webhook signature")

    def handle_webhook(self, event: str, payload: dict) -> Payment | None:
        """Maps a gateway webhook onto verify_and_settle or fail. Unknown events are ignored."""
        logger.info("Received gateway webhook: %s", event)
        payload = payload or {}

        if event in SUCCESS_WEBHOOK_EVENTS:
            order_id = payload.get("order_id")
            gateway_payment_id = payload.get("id")
            signature = payload.get("signature")
            if not order_id or not gateway_payment_id or not signature:
                raise ValidationError("Webhook payload misses order_id, id or signature")
            return self.verify_and_settle(
                order_id,
                gateway_payment_id,
                signature,
                callback_created_at=payload.get("created_at"),
            )

        if event == FAILURE_WEBHOOK_EVENT:
            order_id = payload.get("order_id")
            if not order_id:
                raise ValidationError("Webhook payload misses order_id")
            return self.fail(order_id, payload.get("description") or "Unknown reason")

        logger.info("Ignoring unhandled webhook event: %s", event)
        return None

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, payment_id: str) -> Payment:
        with session_scope(self._session_factory) as db:
            payment = PaymentRepository(db).get_by_id(payment_id)
        if payment is None:
            raise NotFoundError("Payment", payment_id)
        return payment

    def get_by_booking(self, booking_id: str) -> Payment:
        with session_scope(self._session_factory) as db:
            payment = PaymentRepository(db).get_by_booking_id(booking_id)
        if payment is None:
            raise NotFoundError("Payment for booking", booking_id)
        return payment

    def get_by_order(self, order_id: str) -> Payment:
        with session_scope(self._session_factory) as db:
            payment = PaymentRepository(db).get_by_order_id(order_id)
        if payment is None:
            raise NotFoundError("Payment", order_id)
        return payment

    def list_for_user(self, user_id: str, limit: int = 50) -> list[Payment]:
        with session_scope(self._session_factory) as db:
            return PaymentRepository(db).list_by_user(user_id, limit=limit)

    def fetch_order_status(self, order_id: str) -> str:
        return self._gateway.fetch_order(order_id)

    # ------------------------------------------------------------------
    # Consumers
    # ------------------------------------------------------------------

    def on_booking_event(self, envelope: EventEnvelope) -> None:
        """Keeps the local booking read model in step with booking.created / booking.changed."""
        if envelope.event_type is EventType.BOOKING_CREATED:
            created = envelope.payload_as(BookingCreatedPayload)
            snapshot = (created.booking_id, created.user_id, created.event_id, created.seats, BookingStatus.PENDING)
        elif envelope.event_type is EventType.BOOKING_CHANGED:
            changed = envelope.payload_as(BookingChangedPayload)
            snapshot = (changed.booking_id, changed.user_id, changed.event_id, changed.seats, changed.status)
        else:
            logger.debug("Ignoring %s", envelope.dedupe_key)
            return

        booking_id, user_id, event_id, seats, status = snapshot

        def mutate(db: Session) -> None:
            applied = BookingReferenceRepository(db).upsert(
                booking_id=booking_id,
                user_id=user_id,
                event_id=event_id,
                seat_count=seats,
                status=status,
                sequence=envelope.sequence,
                now=self._clock(),
            )
            if not applied:
                logger.info("Stale booking snapshot skipped. key=%s", envelope.dedupe_key)

        self._consumer.process(envelope, mutate)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _check_booking_reference(self, db: Session, user_id: str, booking_id: str, event_id: str) -> None:
        reference = BookingReferenceRepository(db).get(booking_id)
        if reference is None:
            # Booking events may not have arrived yet.
            return
        if reference.user_id != user_id:
            raise ConflictError("Booking belongs to another user")
        if reference.event_id != event_id:
            raise ValidationError("event_id does not match the booking")
        if reference.status is not BookingStatus.PENDING:
            raise ConflictError(f"Booking is {reference.status.value}; payment not allowed")

    def _check_replay_window(self, order_id: str, created_at) -> None:
        if created_at is None or self._replay_window_seconds <= 0:
            return
        if isinstance(created_at, (int, float)):
            created_at = datetime.fromtimestamp(created_at, tz=timezone.utc)
        elif isinstance(created_at, str):
            try:
                created_at = datetime.fromisoformat(created_at)
            except ValueError as exc:
                raise ValidationError("Callback created_at is not a timestamp") from exc
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)

        age = (self._clock() - created_at).total_seconds()
        if age > self._replay_window_seconds:
            security_logger.warning(
                "Stale payment callback rejected. order_id=%s age_seconds=%.0f",
                order_id,
                age,
            )
            raise StaleCallbackError("Payment callback is outside the replay window")

    def _mark_order_failed(self, payment_id: str) -> None:
        with session_scope(self._session_factory) as db:
            payment = PaymentRepository(db).get_for_update(payment_id)
            if payment is None or payment.status is not PaymentStatus.PENDING:
                return
            self._apply_failure(db, payment, ORDER_CREATION_FAILED)
        self._publisher.publish_aggregate(AGGREGATE_TYPE, payment_id)

    def _apply_failure(self, db: Session, payment: Payment, reason: str) -> None:
        PaymentStateMachine.validate_transition(payment.status, PaymentStatus.FAILED)
        payment.failure_reason = reason
        PaymentRepository(db).update_status(payment, PaymentStatus.FAILED, self._clock())
        self._record_event(db, payment, EventType.PAYMENT_FAILED)
        logger.info("Payment failed. payment_id=%s reason=%s", payment.id, reason)

    def _record_event(self, db: Session, payment: Payment, event_type: EventType) -> None:
        payload = PaymentOutcomePayload(
            payment_id=payment.id,
            booking_id=payment.booking_id,
            user_id=payment.user_id,
            event_id=payment.event_id,
            amount=payment.amount,
            currency=payment.currency,
            status=payment.status,
            order_id=payment.order_id,
            gateway_payment_id=payment.gateway_payment_id,
            failure_reason=payment.failure_reason,
            settled_at=payment.settled_at,
        )
        envelope = EventEnvelope.build(
            event_type=event_type,
            source=PAYMENT_SERVICE,
            aggregate_id=payment.id,
            sequence=payment.version,
            payload=payload,
            occurred_at=payment.updated_at,
        )
        OutboxRepository(db, PAYMENT_SERVICE).add(AGGREGATE_TYPE, envelope)

    @staticmethod
    def _parse_amount(amount) -> Decimal:
        try:
            value = Decimal(str(amount))
        except (InvalidOperation, TypeError, ValueError) as exc:
            raise ValidationError(f"Invalid amount: {amount!r}") from exc
        if not value.is_finite():
            raise ValidationError("amount must be positive")
        try:
            value = value.quantize(Decimal("0.01"))
        except InvalidOperation as exc:
            raise ValidationError(f"Invalid amount: {amount!r}") from exc
        # Numeric(12, 2) column.
        if value <= 0 or value >= Decimal("1e10"):
            raise ValidationError("amount must be positive and below 10,000,000,000")
        return value

    @staticmethod
    def _parse_currency(currency: str) -> str:
        if not isinstance(currency, str) or len(currency.strip()) != 3 or not currency.strip().isalpha():
            raise ValidationError("currency must be a 3-letter code")
        return currency.strip().upper()
