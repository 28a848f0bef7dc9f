import logging
from datetime import timedelta

from sqlalchemy.orm import Session, sessionmaker

from evently.application.idempotency import IdempotentConsumer
from evently.domain.clock import Clock, utc_now
from evently.domain.events import NOTIFICATION_SERVICE, EventEnvelope, EventType
from evently.domain.exceptions import NotFoundError
from evently.domain.notifications import NotificationMessage, NotificationStatus, render_message
from evently.infrastructure.db.models import Notification
from evently.infrastructure.db.session import session_scope
from evently.infrastructure.notifications.sender import NotificationSender
from evently.infrastructure.repositories.notification_repository import NotificationRepository

logger = logging.getLogger(__name__)

SUBSCRIBED_EVENTS = (
    EventType.BOOKING_CREATED,
    EventType.BOOKING_CHANGED,
    EventType.PAYMENT_SUCCESS,
    EventType.PAYMENT_FAILED,
)


class NotificationProjector:
    """
    Turns booking and payment envelopes into user notifications.

    The notification row is written under the dedup ledger; delivery happens
    after commit and its failures stay local (FAILED + retry counter), so a
    broken sender never causes the upstream envelope to be redelivered.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        sender: NotificationSender,
        max_retries: int = 3,
        clock: Clock = utc_now,
        pending_grace_seconds: float = 300.0,
    ):
        self._session_factory = session_factory
        self._sender = sender
        self.max_retries = max_retries
        self.pending_grace_seconds = pending_grace_seconds
        self._clock = clock
        self._consumer = IdempotentConsumer(NOTIFICATION_SERVICE, session_factory)

    def handle(self, envelope: EventEnvelope) -> Notification | None:
        message = render_message(envelope)
        if message is None:
            logger.debug("No notification for %s", envelope.dedupe_key)
            return None

        created: list[str] = []

        def mutate(db: Session) -> None:
            notification = NotificationRepository(db).create(
                message,
                source_event=envelope.dedupe_key,
                now=self._clock(),
            )
            created.append(notification.id)

        if not self._consumer.process(envelope, mutate):
            return None
        return self._deliver(created[0], message)

    def retry_failed(self, limit: int = 100) -> int:
        """
        Re-attempts FAILED notifications still under the retry bound, and
        PENDING ones left behind when a process stopped between writing the
        row and delivering it. Returns how many were sent.
        """
        stale_before = self._clock() - timedelta(seconds=self.pending_grace_seconds)
        with session_scope(self._session_factory) as db:
            retryable = NotificationRepository(db).list_retryable(
                self.max_retries,
                stale_before=stale_before,
                limit=limit,
            )
            pending = [(n.id, self._message_from_row(n)) for n in retryable]

        sent = 0
        for notification_id, message in pending:
            notification = self._deliver(notification_id, message)
            if notification.status is NotificationStatus.SENT:
                sent += 1
        if pending:
            logger.info("Notification retry sweep: %s/%s sent", sent, len(pending))
        return sent

    def get(self, notification_id: str) -> Notification:
        with session_scope(self._session_factory) as db:
            notification = NotificationRepository(db).get_by_id(notification_id)
        if notification is None:
            raise NotFoundError("Notification", notification_id)
        return notification

    def list_for_user(self, user_id: str, limit: int = 50) -> list[Notification]:
        with session_scope(self._session_factory) as db:
            return NotificationRepository(db).list_by_user(user_id, limit=limit)

    def _deliver(self, notification_id: str, message: NotificationMessage) -> Notification:
        error: str | None = None
        try:
            self._sender.send(message)
        except Exception as exc:
            error = str(exc) or exc.__class__.__name__

        with session_scope(self._session_factory) as db:
            repo = NotificationRepository(db)
            notification = repo.get_by_id(notification_id)
            if error is None:
                repo.mark_sent(notification, self._clock())
                logger.info(
                    "Notification sent. id=%s user_id=%s subject=%r",
                    notification.id,
                    notification.user_id,
                    notification.title,
                )
            else:
                repo.mark_failed(notification, error)
                logger.warning(
                    "Notification delivery failed. id=%s attempt=%s/%s error=%s",
                    notification.id,
                    notification.retry_count,
                    self.max_retries,
                    error,
                )
        return notification

    @staticmethod
    def _message_from_row(notification: Notification) -> NotificationMessage:
        return NotificationMessage(
            user_id=notification.user_id,
            recipient=notification.recipient or "",
            subject=notification.title,
            body=notification.message,
            booking_id=notification.booking_id,
            event_id=notification.event_id,
            notification_type=notification.notification_type,
        )
