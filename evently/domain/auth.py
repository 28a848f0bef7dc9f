"""Roles, capabilities and the claims carried by a verified token.

Authorization is a lookup in ``ROLE_CAPABILITIES``; routes declare the
capability they need and never compare role strings.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet

from evently.domain.exceptions import ForbiddenError


class Role(str, Enum):
    USER = "USER"
    ORGANIZER = "ORGANIZER"
    ADMIN = "ADMIN"
    SERVICE = "SERVICE"

    @classmethod
    def parse(cls, value: str) -> "Role":
        """Case-insensitive lookup. Raises ValueError for unknown roles."""
        if not isinstance(value, str):
            raise ValueError(f"Role must be a string, got {type(value)}")
        try:
            return cls(value.strip().upper())
        except ValueError:
            raise ValueError(f"Unknown role: {value!r}") from None


class Capability(str, Enum):
    CREATE_BOOKING = "CREATE_BOOKING"
    VIEW_BOOKING = "VIEW_BOOKING"
    VIEW_EVENT_BOOKINGS = "VIEW_EVENT_BOOKINGS"
    CANCEL_BOOKING = "CANCEL_BOOKING"
    CONFIRM_BOOKING = "CONFIRM_BOOKING"
    FAIL_BOOKING = "FAIL_BOOKING"
    INITIATE_PAYMENT = "INITIATE_PAYMENT"
    VERIFY_PAYMENT = "VERIFY_PAYMENT"
    VIEW_PAYMENT = "VIEW_PAYMENT"
    FAIL_PAYMENT = "FAIL_PAYMENT"
    REFUND_PAYMENT = "REFUND_PAYMENT"
    VIEW_NOTIFICATIONS = "VIEW_NOTIFICATIONS"
    RETRY_NOTIFICATIONS = "RETRY_NOTIFICATIONS"
    VIEW_OUTBOX = "VIEW_OUTBOX"
    ACT_FOR_ANY_USER = "ACT_FOR_ANY_USER"


_CUSTOMER_CAPABILITIES: FrozenSet[Capability] = frozenset(
    {
        Capability.CREATE_BOOKING,
        Capability.VIEW_BOOKING,
        Capability.CANCEL_BOOKING,
        Capability.INITIATE_PAYMENT,
        Capability.VERIFY_PAYMENT,
        Capability.VIEW_PAYMENT,
        Capability.VIEW_NOTIFICATIONS,
    }
)

ROLE_CAPABILITIES: Dict[Role, FrozenSet[Capability]] = {
    Role.USER: _CUSTOMER_CAPABILITIES,
    Role.ORGANIZER: _CUSTOMER_CAPABILITIES | {Capability.VIEW_EVENT_BOOKINGS},
    Role.SERVICE: _CUSTOMER_CAPABILITIES
    | {
        Capability.CONFIRM_BOOKING,
        Capability.FAIL_BOOKING,
        Capability.FAIL_PAYMENT,
        Capability.ACT_FOR_ANY_USER,
    },
    Role.ADMIN: frozenset(Capability),
}


@dataclass(frozen=True)
class AuthClaims:
    subject: str
    role: Role
    user_id: str
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class Principal:
    """Caller identity as forwarded by the boundary filter."""

    user_id: str
    role: Role
    username: str | None = None

    def can(self, capability: Capability) -> bool:
        return capability in ROLE_CAPABILITIES.get(self.role, frozenset())

    def require(self, capability: Capability) -> None:
        if not self.can(capability):
            raise ForbiddenError(f"Role {self.role.value} lacks {capability.value}")

    def require_owner(self, owner_user_id: str) -> None:
        """Callers act on their own aggregates unless they may act for anyone."""
        if owner_user_id != self.user_id and not self.can(Capability.ACT_FOR_ANY_USER):
            raise ForbiddenError("Aggregate belongs to another user")
