from typing import Callable

from fastapi import Depends, Request

from evently.api.security import USER_ID_HEADER, USER_ROLE_HEADER, USERNAME_HEADER
from evently.application.booking_service import BookingService
from evently.application.notification_service import NotificationProjector
from evently.application.payment_service import PaymentService
from evently.bootstrap import ServiceContainer
from evently.domain.auth import Capability, Principal, Role
from evently.domain.exceptions import AuthError, UnsupportedTokenError


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


def get_booking_service(container: ServiceContainer = Depends(get_container)) -> BookingService:
    return container.bookings


def get_payment_service(container: ServiceContainer = Depends(get_container)) -> PaymentService:
    return container.payments


def get_notification_projector(container: ServiceContainer = Depends(get_container)) -> NotificationProjector:
    return container.notifications


def get_principal(request: Request) -> Principal:
    """Identity forwarded by BearerTokenMiddleware."""
    user_id = request.headers.get(USER_ID_HEADER)
    role = request.headers.get(USER_ROLE_HEADER)
    if not user_id or not role:
        raise AuthError()
    try:
        parsed_role = Role.parse(role)
    except ValueError as exc:
        raise UnsupportedTokenError() from exc
    return Principal(
        user_id=user_id,
        role=parsed_role,
        username=request.headers.get(USERNAME_HEADER),
    )


def require(capability: Capability) -> Callable[..., Principal]:
    def dependency(principal: Principal = Depends(get_principal)) -> Principal:
        principal.require(capability)
        return principal

    return dependency
