# evently/infrastructure/repositories/payment_repository.py

from datetime import datetime
from decimal import Decimal

from sqlalchemy.orm import Session
from sqlalchemy import select

from evently.infrastructure.db.models import BookingReference, Payment, PaymentCallback
from evently.domain.payment_method import PaymentMethod
from evently.domain.state_machine import BookingStatus, PaymentStatus


class PaymentRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, payment_id: str) -> Payment | None:
        stmt = select(Payment).where(Payment.id == payment_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def get_by_booking_id(self, booking_id: str) -> Payment | None:
        stmt = select(Payment).where(Payment.booking_id == booking_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def get_by_order_id(self, order_id: str) -> Payment | None:
        stmt = select(Payment).where(Payment.order_id == order_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def get_by_order_id_for_update(self, order_id: str) -> Payment | None:
        stmt = select(Payment).where(Payment.order_id == order_id).with_for_update()
        return self.db.execute(stmt).scalar_one_or_none()

    def get_for_update(self, payment_id: str) -> Payment | None:
        stmt = select(Payment).where(Payment.id == payment_id).with_for_update()
        return self.db.execute(stmt).scalar_one_or_none()

    def list_by_user(self, user_id: str, limit: int = 50) -> list[Payment]:
        stmt = (
            select(Payment)
            .where(Payment.user_id == user_id)
            .order_by(Payment.created_at.desc())
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def create_payment(
        self,
        booking_id: str,
        user_id: str,
        event_id: str,
        amount: Decimal,
        currency: str,
        method: PaymentMethod,
        now: datetime,
    ) -> Payment:
        payment = Payment(
            booking_id=booking_id,
            user_id=user_id,
            event_id=event_id,
            amount=amount,
            currency=currency,
            method=method,
            status=PaymentStatus.PENDING,
            version=1,
            created_at=now,
            updated_at=now,
        )
        self.db.add(payment)
        self.db.flush()
        return payment

    def update_status(
        self,
        payment: Payment,
        new_status: PaymentStatus,
        now: datetime,
    ) -> None:
        payment.status = new_status
        payment.version += 1
        payment.updated_at = now

    def get_callback(
        self,
        provider: str,
        order_id: str,
        gateway_payment_id: str,
    ) -> PaymentCallback | None:
        stmt = (
            select(PaymentCallback)
            .where(PaymentCallback.provider == provider)
            .where(PaymentCallback.order_id == order_id)
            .where(PaymentCallback.gateway_payment_id == gateway_payment_id)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def add_callback(
        self,
        provider: str,
        order_id: str,
        gateway_payment_id: str,
        payment_id: str,
        payload_hash: str,
        outcome: str,
    ) -> None:
        self.db.add(
            PaymentCallback(
                provider=provider,
                order_id=order_id,
                gateway_payment_id=gateway_payment_id,
                payment_id=payment_id,
                payload_hash=payload_hash,
                outcome=outcome,
            )
        )


class BookingReferenceRepository:

    def __init__(self, db: Session):
        self.db = db

    def get(self, booking_id: str) -> BookingReference | None:
        stmt = select(BookingReference).where(BookingReference.booking_id == booking_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def upsert(
        self,
        booking_id: str,
        user_id: str,
        event_id: str,
        seat_count: int,
        status: BookingStatus,
        sequence: int,
        now: datetime,
    ) -> bool:
        """Applies a booking snapshot unless a newer one is already stored."""
        reference = self.get(booking_id)
        if reference is None:
            self.db.add(
                BookingReference(
                    booking_id=booking_id,
                    user_id=user_id,
                    event_id=event_id,
                    seat_count=seat_count,
                    status=status,
                    sequence=sequence,
                    updated_at=now,
                )
            )
            return True

        if sequence <= reference.sequence:
            return False

        reference.status = status
        reference.seat_count = seat_count
        reference.sequence = sequence
        reference.updated_at = now
        return True
