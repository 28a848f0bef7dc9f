class EventlyError(Exception):
    """
    Base exception for all domain-level errors
    inside the Evently saga core.
    """


class ValidationError(EventlyError):
    """Raised when a request carries bad input. Never retried."""


class NotFoundError(EventlyError):
    """Raised when an aggregate cannot be found."""

    def __init__(self, aggregate: str, aggregate_id: str):
        self.aggregate = aggregate
        self.aggregate_id = aggregate_id
        super().__init__(f"{aggregate} not found: {aggregate_id}")


class ConflictError(EventlyError):
    """Raised when a request conflicts with the current aggregate state."""


class DuplicatePaymentError(ConflictError):
    """Raised when a payment already exists for a booking."""

    def __init__(self, booking_id: str):
        self.booking_id = booking_id
        super().__init__(f"Payment already exists for booking {booking_id}")


class InvalidStateTransitionError(ConflictError):
    """
    Raised when an illegal state transition is attempted.
    """

    def __init__(self, from_state: str, to_state: str):
        self.from_state = from_state
        self.to_state = to_state

        message = (
            f"Illegal state transition attempted: "
            f"{from_state} -> {to_state}"
        )
        super().__init__(message)


class AuthError(EventlyError):
    """
    Raised when a bearer token cannot be trusted.

    Callers surface every subclass as a generic "unauthorized";
    the subclass only exists for logging.
    """

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message)


class TokenExpiredError(AuthError):
    """Token expiry is in the past."""


class MalformedTokenError(AuthError):
    """Token cannot be decoded or misses required claims."""


class BadSignatureError(AuthError):
    """Token signature does not match the shared secret."""


class UnsupportedTokenError(AuthError):
    """Token uses an algorithm or role this platform does not accept."""


class ForbiddenError(AuthError):
    """Verified caller lacks the capability for an operation."""


class TransientInfraError(EventlyError):
    """Infrastructure failure that is safe to retry with backoff."""


class GatewayTimeoutError(TransientInfraError):
    """Payment gateway did not answer within the per-call timeout."""


class GatewayUnavailableError(TransientInfraError):
    """Payment gateway refused or failed the call."""


class BusUnavailableError(TransientInfraError):
    """Event bus did not acknowledge a publish."""


class SignatureMismatchError(EventlyError):
    """
    Raised when a gateway callback signature does not verify.
    Fails closed and is never retried.
    """


class StaleCallbackError(SignatureMismatchError):
    """Raised when a gateway callback falls outside the replay window."""
