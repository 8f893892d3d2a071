"""Custom exceptions for payment reconciliation."""

from services.exceptions import NotFoundError, ServiceError


class InvalidSignatureError(ServiceError):
    """Webhook signature is missing or does not match."""
    status_code = 401
    code = "invalid_signature"


class PendingPaymentNotFoundError(NotFoundError):
    """Raised when a pending payment cannot be found."""
    code = "pending_payment_not_found"


class GatewayError(ServiceError):
    """The payment gateway rejected the request."""
    status_code = 502
    code = "gateway_error"


class GatewayUnavailableError(GatewayError):
    """The payment gateway could not be reached; safe to retry."""
    status_code = 503
    code = "gateway_unavailable"


class ReconciliationFailedError(ServiceError):
    """Order creation failed after the payment was claimed; the draft is back to pending."""
    status_code = 503
    code = "reconciliation_failed"
