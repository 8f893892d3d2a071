"""
Payment reconciliation service.

This module handles:
    - Storing checkout drafts and opening hosted checkouts
    - Turning approved payments into orders exactly once
    - Verifying and processing gateway webhooks
"""

from .ledger import (
    ReconciliationResult,
    WebhookResult,
    check_pending_payment,
    create_pending_payment,
    handle_payment_webhook,
    reconcile_payment,
)
from .gateway import PaymentGatewayClient, verify_webhook_signature

from .exceptions import (
    GatewayError,
    GatewayUnavailableError,
    InvalidSignatureError,
    PendingPaymentNotFoundError,
    ReconciliationFailedError,
)

__all__ = [
    # Ledger
    "create_pending_payment",
    "reconcile_payment",
    "check_pending_payment",
    "handle_payment_webhook",
    "ReconciliationResult",
    "WebhookResult",
    # Gateway
    "PaymentGatewayClient",
    "verify_webhook_signature",
    # Exceptions
    "GatewayError",
    "GatewayUnavailableError",
    "InvalidSignatureError",
    "PendingPaymentNotFoundError",
    "ReconciliationFailedError",
]
