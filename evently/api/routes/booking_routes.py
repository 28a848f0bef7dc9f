from fastapi import APIRouter, Depends

from evently.api.dependencies import get_booking_service, require
from evently.api.schemas.schemas import (
    BookingConfirmRequest,
    BookingFailRequest,
    BookingRequest,
    BookingResponse,
)
from evently.application.booking_service import BookingService
from evently.domain.auth import Capability, Principal
from evently.infrastructure.db.models import Booking

router = APIRouter(prefix="/bookings", tags=["bookings"])


def _to_response(booking: Booking) -> BookingResponse:
    return BookingResponse(
        booking_id=booking.id,
        user_id=booking.user_id,
        event_id=booking.event_id,
        seats=booking.seat_count,
        status=booking.status.value,
        payment_ref=booking.payment_ref,
        created_at=booking.created_at,
        updated_at=booking.updated_at,
    )


@router.post("", response_model=BookingResponse)
def create_booking(
    request: BookingRequest,
    principal: Principal = Depends(require(Capability.CREATE_BOOKING)),
    service: BookingService = Depends(get_booking_service),
):
    user_id = request.user_id or principal.user_id
    principal.require_owner(user_id)

    booking = service.create(
        user_id=user_id,
        event_id=request.event_id,
        seats=request.seats,
    )
    return _to_response(booking)


@router.get("", response_model=list[BookingResponse])
def list_bookings(
    user_id: str | None = None,
    limit: int = 50,
    principal: Principal = Depends(require(Capability.VIEW_BOOKING)),
    service: BookingService = Depends(get_booking_service),
):
    user_id = user_id or principal.user_id
    principal.require_owner(user_id)
    safe_limit = max(1, min(limit, 200))
    return [_to_response(b) for b in service.list_for_user(user_id, limit=safe_limit)]


@router.get("/event/{event_id}", response_model=list[BookingResponse])
def list_event_bookings(
    event_id: str,
    limit: int = 50,
    principal: Principal = Depends(require(Capability.VIEW_EVENT_BOOKINGS)),
    service: BookingService = Depends(get_booking_service),
):
    safe_limit = max(1, min(limit, 200))
    return [_to_response(b) for b in service.list_for_event(event_id, limit=safe_limit)]


@router.get("/{booking_id}", response_model=BookingResponse)
def get_booking(
    booking_id: str,
    principal: Principal = Depends(require(Capability.VIEW_BOOKING)),
    service: BookingService = Depends(get_booking_service),
):
    booking = service.get(booking_id)
    principal.require_owner(booking.user_id)
    return _to_response(booking)


@router.post("/{booking_id}/cancel", response_model=BookingResponse)
def cancel_booking(
    booking_id: str,
    principal: Principal = Depends(require(Capability.CANCEL_BOOKING)),
    service: BookingService = Depends(get_booking_service),
):
    principal.require_owner(service.get(booking_id).user_id)
    return _to_response(service.cancel(booking_id))


@router.post("/{booking_id}/confirm", response_model=BookingResponse)
def confirm_booking(
    booking_id: str,
    request: BookingConfirmRequest,
    principal: Principal = Depends(require(Capability.CONFIRM_BOOKING)),
    service: BookingService = Depends(get_booking_service),
):
    return _to_response(service.confirm(booking_id, request.payment_ref))


@router.post("/{booking_id}/fail", response_model=BookingResponse)
def fail_booking(
    booking_id: str,
    request: BookingFailRequest,
    principal: Principal = Depends(require(Capability.FAIL_BOOKING)),
    service: BookingService = Depends(get_booking_service),
):
    return _to_response(service.fail(booking_id, reason=request.reason))
