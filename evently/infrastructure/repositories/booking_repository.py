# evently/infrastructure/repositories/booking_repository.py

from datetime import datetime

from sqlalchemy.orm import Session
from sqlalchemy import select

from evently.infrastructure.db.models import Booking
from evently.domain.state_machine import BookingStatus


class BookingRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(
        self,
        booking_id: str,
    ) -> Booking | None:

        stmt = select(Booking).where(Booking.id == booking_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def get_for_update(
        self,
        booking_id: str,
    ) -> Booking | None:
        """
        SELECT ... FOR UPDATE
        Serializes handlers touching the same booking.
        """

        stmt = select(Booking).where(Booking.id == booking_id).with_for_update()
        return self.db.execute(stmt).scalar_one_or_none()

    def list_by_user(self, user_id: str, limit: int = 50) -> list[Booking]:
        stmt = (
            select(Booking)
            .where(Booking.user_id == user_id)
            .order_by(Booking.created_at.desc())
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def list_by_event(self, event_id: str, limit: int = 50) -> list[Booking]:
        stmt = (
            select(Booking)
            .where(Booking.event_id == event_id)
            .order_by(Booking.created_at.desc())
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def create_booking(
        self,
        user_id: str,
        event_id: str,
        seat_count: int,
        now: datetime,
    ) -> Booking:

        booking = Booking(
            user_id=user_id,
            event_id=event_id,
            seat_count=seat_count,
            status=BookingStatus.PENDING,
            version=1,
            created_at=now,
            updated_at=now,
        )

        self.db.add(booking)
        self.db.flush()
        return booking

    def update_status(
        self,
        booking: Booking,
        new_status: BookingStatus,
        now: datetime,
        payment_ref: str | None = None,
    ) -> None:

        booking.status = new_status
        if payment_ref is not None:
            booking.payment_ref = payment_ref
        booking.version += 1
        booking.updated_at = now
