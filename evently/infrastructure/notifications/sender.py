import logging
from abc import ABC, abstractmethod

from evently.domain.notifications import NotificationMessage

logger = logging.getLogger(__name__)


class NotificationSender(ABC):
    """Delivery collaborator (email, SMS). Raises on delivery failure."""

    @abstractmethod
    def send(self, message: NotificationMessage) -> None:
        ...


class LoggingNotificationSender(NotificationSender):
    """Stands in for the email/SMS provider by writing the message to the log."""

    def send(self, message: NotificationMessage) -> None:
        logger.info(
            "%s to=%s subject=%r body=%r",
            message.notification_type.value,
            message.recipient,
            message.subject,
            message.body,
        )
