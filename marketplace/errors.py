"""
Error taxonomy shared by the services and the API layer.

Each error carries a stable ``kind`` and the HTTP status the API layer maps it
to. Services raise these; routers never translate them by hand, a single
exception handler renders them.
"""


class MarketplaceError(Exception):
    """Base class for all domain errors."""

    kind = "internal"
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


# ---------------------------------------------------------------------------
# Client errors
# ---------------------------------------------------------------------------


class ValidationError(MarketplaceError):
    """Malformed or inconsistent input."""

    kind = "validation"
    status_code = 400


class InvalidTransitionError(ValidationError):
    """A status change not present in the allowed transition table."""

    kind = "invalid_transition"
    status_code = 409

    def __init__(self, entity: str, current: str, target: str) -> None:
        super().__init__(f"Cannot move {entity} from '{current}' to '{target}'")
        self.current = current
        self.target = target


class DuplicatePaymentError(ValidationError):
    """The order already has an active or successful payment."""

    kind = "duplicate_payment"
    status_code = 409


class IdempotencyKeyReusedError(ValidationError):
    """An idempotency key was replayed with a different request body."""

    kind = "idempotency_key_reused"
    status_code = 409


class NotFoundError(MarketplaceError):
    kind = "not_found"
    status_code = 404


class AuthorizationError(MarketplaceError):
    """Caller identity is missing or malformed."""

    kind = "unauthorized"
    status_code = 401


class ForbiddenError(AuthorizationError):
    """Caller is known but lacks the role or ownership for the action."""

    kind = "forbidden"
    status_code = 403


# ---------------------------------------------------------------------------
# Infrastructure errors
# ---------------------------------------------------------------------------


class StorageError(MarketplaceError):
    kind = "storage"
    status_code = 500


class GatewayError(MarketplaceError):
    """The payment provider could not complete the request."""

    kind = "gateway"
    status_code = 502


class GatewayRejectedError(GatewayError):
    """Provider answered with a non-2xx response."""

    kind = "gateway_rejected"

    def __init__(self, message: str, provider_status: int | None = None) -> None:
        super().__init__(message)
        self.provider_status = provider_status


class GatewayUnavailableError(GatewayError):
    """Provider unreachable: connection refused, DNS failure, reset."""

    kind = "gateway_unavailable"


class GatewayTimeoutError(GatewayError):
    """Provider did not answer within the configured timeout. Outcome unknown."""

    kind = "gateway_timeout"
    status_code = 504


class CircuitBreakerOpenError(GatewayError):
    """Circuit breaker is open; the provider was not called."""

    kind = "gateway_circuit_open"
    status_code = 503
