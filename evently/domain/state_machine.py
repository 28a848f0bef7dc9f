# evently/domain/state_machine.py

from enum import Enum
from typing import Dict, Set

from evently.domain.exceptions import InvalidStateTransitionError


class BookingStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class StateMachine:
    """
    Table-driven lifecycle controller.
    Subclasses declare the status enum and the legal transitions.
    """

    _STATUS_TYPE: type = Enum
    _ALLOWED_TRANSITIONS: Dict[Enum, Set[Enum]] = {}

    @classmethod
    def can_transition(cls, from_status, to_status) -> bool:
        """
        Returns True if transition is allowed.
        """
        cls._ensure_valid_status(from_status)
        cls._ensure_valid_status(to_status)

        return to_status in cls._ALLOWED_TRANSITIONS.get(from_status, set())

    @classmethod
    def validate_transition(cls, from_status, to_status) -> None:
        """
        Raises InvalidStateTransitionError if transition is illegal.
        """
        if not cls.can_transition(from_status, to_status):
            raise InvalidStateTransitionError(
                from_state=from_status.value,
                to_state=to_status.value,
            )

    @classmethod
    def is_terminal(cls, status) -> bool:
        """
        Returns True if the state is terminal (no further transitions allowed).
        """
        cls._ensure_valid_status(status)
        return len(cls._ALLOWED_TRANSITIONS.get(status, set())) == 0

    @classmethod
    def get_allowed_transitions(cls, status) -> Set[Enum]:
        cls._ensure_valid_status(status)
        return cls._ALLOWED_TRANSITIONS.get(status, set())

    @classmethod
    def _ensure_valid_status(cls, status) -> None:
        if not isinstance(status, cls._STATUS_TYPE):
            raise TypeError(
                f"Expected {cls._STATUS_TYPE.__name__}, got {type(status)}"
            )


class BookingStateMachine(StateMachine):
    """
    Booking lifecycle. Only PENDING moves; every other state is terminal.
    """

    _STATUS_TYPE = BookingStatus
    _ALLOWED_TRANSITIONS: Dict[BookingStatus, Set[BookingStatus]] = {
        BookingStatus.PENDING: {
            BookingStatus.CONFIRMED,
            BookingStatus.FAILED,
            BookingStatus.CANCELLED,
        },
        BookingStatus.CONFIRMED: set(),
        BookingStatus.CANCELLED: set(),
        BookingStatus.FAILED: set(),
    }


class PaymentStateMachine(StateMachine):
    """
    Payment lifecycle. Settlement leaves PENDING once; refunds leave SUCCESS once.
    """

    _STATUS_TYPE = PaymentStatus
    _ALLOWED_TRANSITIONS: Dict[PaymentStatus, Set[PaymentStatus]] = {
        PaymentStatus.PENDING: {
            PaymentStatus.SUCCESS,
            PaymentStatus.FAILED,
        },
        PaymentStatus.SUCCESS: {
            PaymentStatus.REFUNDED,
        },
        PaymentStatus.FAILED: set(),
        PaymentStatus.REFUNDED: set(),
    }
