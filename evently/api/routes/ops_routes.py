from fastapi import APIRouter, Depends

from evently.api.dependencies import get_container, require
from evently.api.schemas.schemas import OutboxEventResponse
from evently.bootstrap import ServiceContainer
from evently.domain.auth import Capability, Principal
from evently.domain.events import BOOKING_SERVICE
from evently.domain.exceptions import ValidationError
from evently.infrastructure.repositories.outbox_repository import PENDING, PUBLISHED

router = APIRouter()


@router.get("/health")
def health():
    return {"message": "Evently saga core is running"}


@router.get("/outbox/events", response_model=list[OutboxEventResponse])
def list_outbox_events(
    source: str = BOOKING_SERVICE,
    status_filter: str = PENDING,
    limit: int = 50,
    principal: Principal = Depends(require(Capability.VIEW_OUTBOX)),
    container: ServiceContainer = Depends(get_container),
):
    if status_filter not in (PENDING, PUBLISHED):
        raise ValidationError(f"status_filter must be {PENDING} or {PUBLISHED}")
    try:
        publisher = container.publisher_for(source)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc

    safe_limit = max(1, min(limit, 200))
    return [
        OutboxEventResponse(
            id=item.id,
            source=item.source,
            aggregate_type=item.aggregate_type,
            aggregate_id=item.aggregate_id,
            event_type=item.event_type,
            sequence=item.sequence,
            status=item.status,
            attempts=item.attempts,
            last_error=item.last_error,
            created_at=item.created_at.isoformat(),
            published_at=item.published_at.isoformat() if item.published_at else None,
        )
        for item in publisher.list_events(status_filter, limit=safe_limit)
    ]
