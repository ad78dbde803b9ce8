from __future__ import annotations


class ReconciliationError(Exception):
    """Base class for errors raised by the reconciliation core."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str | None = None, *, code: str | None = None):
        super().__init__(message or self.code)
        if code:
            self.code = code


class ProviderFetchError(ReconciliationError):
    """The payment provider could not be reached or returned an error."""

    status_code = 502
    code = "PROVIDER_FETCH_FAILED"

    def __init__(self, message: str | None = None, *, response_status: int | None = None):
        super().__init__(message)
        self.response_status = response_status


class ValidationError(ReconciliationError):
    """Missing or unparseable order/payment identifiers."""

    status_code = 400
    code = "INVALID_REQUEST"


class AuthError(ReconciliationError):
    status_code = 401
    code = "AUTH_REQUIRED"


class ForbiddenError(AuthError):
    status_code = 403
    code = "FORBIDDEN"


class OrderNotFoundError(ReconciliationError):
    status_code = 404
    code = "ORDER_NOT_FOUND"


class ConflictError(ReconciliationError):
    """A state-dependent operation does not apply; callers report it as skipped."""

    status_code = 200
    code = "CONFLICT"

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class FulfillmentTransitionError(ReconciliationError):
    status_code = 409
    code = "INVALID_FULFILLMENT_TRANSITION"


class PersistenceError(ReconciliationError):
    """A write to the payment, order or stock tables failed."""

    status_code = 500
    code = "PERSISTENCE_ERROR"


class OrderStatusSchemaError(PersistenceError):
    """The orders table rejected a status value in the configured vocabulary."""

    code = "ORDER_STATUS_SCHEMA_MISMATCH"


class NotificationError(ReconciliationError):
    """Receipt generation or delivery failed. Logged only, never surfaced."""

    code = "NOTIFICATION_FAILED"
