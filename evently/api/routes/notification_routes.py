from fastapi import APIRouter, Depends

from evently.api.dependencies import get_notification_projector, require
from evently.api.schemas.schemas import NotificationResponse, RetrySweepResponse
from evently.application.notification_service import NotificationProjector
from evently.domain.auth import Capability, Principal
from evently.infrastructure.db.models import Notification

router = APIRouter(prefix="/notifications", tags=["notifications"])


def _to_response(notification: Notification) -> NotificationResponse:
    return NotificationResponse(
        id=notification.id,
        user_id=notification.user_id,
        booking_id=notification.booking_id,
        event_id=notification.event_id,
        notification_type=notification.notification_type.value,
        title=notification.title,
        message=notification.message,
        recipient=notification.recipient,
        status=notification.status.value,
        retry_count=notification.retry_count,
        error_message=notification.error_message,
        created_at=notification.created_at,
        sent_at=notification.sent_at,
    )


@router.get("", response_model=list[NotificationResponse])
def list_notifications(
    user_id: str | None = None,
    limit: int = 50,
    principal: Principal = Depends(require(Capability.VIEW_NOTIFICATIONS)),
    projector: NotificationProjector = Depends(get_notification_projector),
):
    user_id = user_id or principal.user_id
    principal.require_owner(user_id)
    safe_limit = max(1, min(limit, 200))
    return [_to_response(n) for n in projector.list_for_user(user_id, limit=safe_limit)]


@router.get("/{notification_id}", response_model=NotificationResponse)
def get_notification(
    notification_id: str,
    principal: Principal = Depends(require(Capability.VIEW_NOTIFICATIONS)),
    projector: NotificationProjector = Depends(get_notification_projector),
):
    notification = projector.get(notification_id)
    principal.require_owner(notification.user_id)
    return _to_response(notification)


@router.post("/retry", response_model=RetrySweepResponse)
def retry_failed_notifications(
    principal: Principal = Depends(require(Capability.RETRY_NOTIFICATIONS)),
    projector: NotificationProjector = Depends(get_notification_projector),
):
    return RetrySweepResponse(sent=projector.retry_failed())
