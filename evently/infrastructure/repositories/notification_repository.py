# evently/infrastructure/repositories/notification_repository.py

from datetime import datetime

from sqlalchemy.orm import Session
from sqlalchemy import and_, or_, select

from evently.infrastructure.db.models import Notification
from evently.domain.notifications import NotificationMessage, NotificationStatus


class NotificationRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, notification_id: str) -> Notification | None:
        stmt = select(Notification).where(Notification.id == notification_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def create(self, message: NotificationMessage, source_event: str, now: datetime) -> Notification:
        notification = Notification(
            user_id=message.user_id,
            booking_id=message.booking_id,
            event_id=message.event_id,
            source_event=source_event,
            notification_type=message.notification_type,
            title=message.subject,
            message=message.body,
            recipient=message.recipient,
            status=NotificationStatus.PENDING,
            retry_count=0,
            created_at=now,
        )
        self.db.add(notification)
        self.db.flush()
        return notification

    def list_by_user(self, user_id: str, limit: int = 50) -> list[Notification]:
        stmt = (
            select(Notification)
            .where(Notification.user_id == user_id)
            .order_by(Notification.created_at)
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def list_retryable(self, max_retries: int, stale_before: datetime, limit: int = 100) -> list[Notification]:
        """FAILED rows under the retry bound, plus PENDING rows whose delivery never finished."""
        stmt = (
            select(Notification)
            .where(Notification.retry_count < max_retries)
            .where(
                or_(
                    Notification.status == NotificationStatus.FAILED,
                    and_(
                        Notification.status == NotificationStatus.PENDING,
                        Notification.created_at < stale_before,
                    ),
                )
            )
            .order_by(Notification.created_at)
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def mark_sent(self, notification: Notification, now: datetime) -> None:
        notification.status = NotificationStatus.SENT
        notification.sent_at = now
        notification.error_message = None

    def mark_failed(self, notification: Notification, error: str) -> None:
        notification.status = NotificationStatus.FAILED
        notification.error_message = error
        notification.retry_count += 1
