"""
Pending payment ledger and the reconciliation protocol.

A checkout draft is stored as a PendingPayment before the customer is sent
to the gateway. Whoever first observes the approved payment (the gateway
webhook, a retried webhook, or the client polling) runs reconcile_payment().
The pending -> processing transition is a single conditional UPDATE, so
exactly one caller materializes the order; everybody else waits briefly and
reports what they find.

State machine:
    pending -> processing -> completed
    processing -> pending        (materialization failed, retry later)
"""

import json
import logging
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Optional

from django.conf import settings
from django.core.serializers.json import DjangoJSONEncoder
from django.db import transaction
from django.utils import timezone

from accounts.models import Company
from common.datastore import compare_and_set
from payments.models import PendingPayment
from realtime.notifications import notify_user

from .exceptions import GatewayError, PendingPaymentNotFoundError, ReconciliationFailedError
from .gateway import (
    GatewayPayment,
    PaymentGatewayClient,
    build_external_reference,
    map_payment_status,
    status_message,
    verify_webhook_signature,
)
from .materializer import materialize_order

logger = logging.getLogger(__name__)


RESULT_COMPLETED = "completed"
RESULT_PROCESSING = "processing"
RESULT_PENDING = "pending"
RESULT_EXPIRED = "expired"
RESULT_FAILED = "failed"


@dataclass
class ReconciliationResult:
    """Outcome reported to whichever caller asked."""
    status: str
    order_id: Optional[Any] = None
    gateway_status: Optional[str] = None
    message: str = ""

    @property
    def approved(self) -> bool:
        return self.status == RESULT_COMPLETED or self.gateway_status == "approved"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "orderId": str(self.order_id) if self.order_id else None,
            "approved": self.approved,
            "paymentStatus": map_payment_status(self.gateway_status) if self.gateway_status else None,
            "message": self.message,
        }


@dataclass
class WebhookResult:
    processed: bool
    reason: str = ""
    result: Optional[ReconciliationResult] = None

    def to_dict(self) -> Dict[str, Any]:
        body = {"received": True, "processed": self.processed}
        if self.reason:
            body["reason"] = self.reason
        if self.result is not None:
            body.update(self.result.to_dict())
        return body


def _completed(pending: PendingPayment, gateway_status: Optional[str] = "approved") -> ReconciliationResult:
    return ReconciliationResult(
        status=RESULT_COMPLETED,
        order_id=pending.order_id,
        gateway_status=gateway_status,
        message="Payment approved, order placed.",
    )


def get_pending_payment(pending_id) -> PendingPayment:
    try:
        return PendingPayment.objects.get(id=pending_id)
    except (PendingPayment.DoesNotExist, ValueError):
        raise PendingPaymentNotFoundError("Pending payment not found")


# ===================== Checkout =====================

def create_pending_payment(
    company: Company,
    draft: Dict[str, Any],
    client: PaymentGatewayClient = None,
) -> Dict[str, Any]:
    """
    Store a checkout draft and open a hosted checkout for it.

    The ledger row is committed before the gateway call so a webhook can
    never arrive for an unknown draft. If the gateway fails the row stays
    behind and simply expires.

    Returns:
        {"pendingId", "preferenceId", "checkoutUrl"}

    Raises:
        GatewayError / GatewayUnavailableError
    """
    draft_json = json.loads(json.dumps(draft, cls=DjangoJSONEncoder))

    pending = PendingPayment.objects.create(
        company=company,
        draft_order=draft_json,
        status=PendingPayment.STATUS_PENDING,
        expires_at=timezone.now() + timedelta(minutes=settings.PENDING_PAYMENT_TTL_MINUTES),
    )
    logger.info("Pending payment %s created for company %s", pending.id, company.id)

    client = client or PaymentGatewayClient()
    preference = client.create_preference(pending)

    preference_id = preference.get("id")
    if not preference_id:
        raise GatewayError("Payment gateway did not return a preference id")

    PendingPayment.objects.filter(pk=pending.pk).update(gateway_preference_id=preference_id)

    return {
        "pendingId": str(pending.id),
        "preferenceId": preference_id,
        "checkoutUrl": preference.get("init_point"),
    }


# ===================== Reconciliation =====================

def _await_winner(pending_id) -> ReconciliationResult:
    """
    Lost the claim: give the winner a moment, then report what we see.
    Never materializes.
    """
    delay = settings.RECONCILIATION_RECHECK_DELAY_SECONDS
    if delay:
        time.sleep(delay)

    pending = PendingPayment.objects.get(id=pending_id)
    if pending.status == PendingPayment.STATUS_COMPLETED:
        return _completed(pending)

    return ReconciliationResult(
        status=RESULT_PROCESSING,
        gateway_status="approved",
        message="Payment approved, your order is being registered.",
    )


def _notify_new_order(pending: PendingPayment, order) -> None:
    company = pending.company
    notify_user(
        company.owner_id,
        "New paid order",
        f"Order #{order.short_id} from {order.customer_name} was paid online.",
        notification_type="success",
        data={"type": "new_order", "order_id": str(order.id), "total": str(order.total)},
    )


def reconcile_payment(pending_id, payment: GatewayPayment) -> ReconciliationResult:
    """
    Apply an observed gateway payment to a pending payment.

    Safe to call any number of times, concurrently, from any process:
    at most one call creates the order and all of them end up reporting
    the same order id.

    Raises:
        PendingPaymentNotFoundError
        ReconciliationFailedError: materialization failed; the ledger has
            been put back to pending
    """
    pending = get_pending_payment(pending_id)

    if pending.status == PendingPayment.STATUS_COMPLETED:
        logger.debug("Pending payment %s already completed (order %s)", pending.id, pending.order_id)
        return _completed(pending, payment.status)

    if not payment.approved:
        if pending.gateway_reference_id != payment.id:
            PendingPayment.objects.filter(
                pk=pending.pk, status=PendingPayment.STATUS_PENDING
            ).update(gateway_reference_id=payment.id)
        failed = map_payment_status(payment.status) in ("failed", "refunded")
        return ReconciliationResult(
            status=RESULT_FAILED if failed else RESULT_PENDING,
            gateway_status=payment.status,
            message=status_message(payment.status),
        )

    if pending.status == PendingPayment.STATUS_PROCESSING:
        return _await_winner(pending.id)

    now = timezone.now()
    if pending.expires_at <= now:
        logger.warning(
            "Approved payment %s arrived for expired pending payment %s; not materializing",
            payment.id, pending.id,
        )
        return ReconciliationResult(
            status=RESULT_EXPIRED,
            gateway_status=payment.status,
            message="This checkout expired. Please place the order again.",
        )

    claimed = compare_and_set(
        PendingPayment,
        pending.pk,
        "status",
        PendingPayment.STATUS_PENDING,
        extra_filters={"expires_at__gt": now},
        status=PendingPayment.STATUS_PROCESSING,
        gateway_reference_id=payment.id,
    )
    if not claimed:
        logger.info("Lost reconciliation claim on pending payment %s", pending.id)
        return _await_winner(pending.id)

    logger.info("Claimed pending payment %s for payment %s", pending.id, payment.id)

    try:
        with transaction.atomic():
            order = materialize_order(pending, gateway_payment_id=payment.id)
            finished = compare_and_set(
                PendingPayment,
                pending.pk,
                "status",
                PendingPayment.STATUS_PROCESSING,
                status=PendingPayment.STATUS_COMPLETED,
                order=order,
                completed_at=timezone.now(),
            )
            if not finished:
                raise RuntimeError(f"Pending payment {pending.id} left processing during materialization")
    except Exception as exc:
        logger.exception("Materialization failed for pending payment %s; reverting to pending", pending.id)
        compare_and_set(
            PendingPayment,
            pending.pk,
            "status",
            PendingPayment.STATUS_PROCESSING,
            status=PendingPayment.STATUS_PENDING,
        )
        raise ReconciliationFailedError("Could not register the order, please retry.") from exc

    _notify_new_order(pending, order)

    return ReconciliationResult(
        status=RESULT_COMPLETED,
        order_id=order.id,
        gateway_status=payment.status,
        message="Payment approved, order placed.",
    )


def check_pending_payment(
    pending_id,
    payment_id: Optional[str] = None,
    client: PaymentGatewayClient = None,
) -> ReconciliationResult:
    """
    Client polling entry point.

    Completed drafts are answered from the ledger without calling the
    gateway. Otherwise the payment is looked up by id (from the request or
    a previous notification) or, failing that, by external reference.
    """
    pending = get_pending_payment(pending_id)

    if pending.status == PendingPayment.STATUS_COMPLETED:
        return _completed(pending)

    client = client or PaymentGatewayClient()
    payment_id = payment_id or pending.gateway_reference_id

    if payment_id:
        payment = client.get_payment(payment_id)
    else:
        payment = client.find_latest_payment(build_external_reference(pending))

    if payment is None:
        if pending.is_expired:
            return ReconciliationResult(status=RESULT_EXPIRED, message="This checkout expired.")
        return ReconciliationResult(status=RESULT_PENDING, message=status_message(None))

    if str(payment.external_reference.get("pending_id")) != str(pending.id):
        logger.warning("Payment %s does not belong to pending payment %s", payment.id, pending.id)
        return ReconciliationResult(status=RESULT_PENDING, message=status_message(None))

    return reconcile_payment(pending.id, payment)


# ===================== Webhook =====================

def handle_payment_webhook(
    body: Dict[str, Any],
    signature: Optional[str],
    request_id: Optional[str],
    client: PaymentGatewayClient = None,
) -> WebhookResult:
    """
    Process a gateway notification.

    The signature is checked before anything is read. Notifications that
    are not about order payments are acknowledged without processing so
    the gateway stops retrying them.

    Raises:
        InvalidSignatureError
        GatewayError / GatewayUnavailableError (gateway should retry)
    """
    data_id = str((body.get("data") or {}).get("id") or "")
    verify_webhook_signature(signature, request_id, data_id)

    topic = body.get("type") or ""
    action = body.get("action") or ""
    if topic != "payment" and not action.startswith("payment."):
        logger.debug("Ignoring webhook topic=%s action=%s", topic, action)
        return WebhookResult(processed=False, reason="not_a_payment")

    client = client or PaymentGatewayClient()
    payment = client.get_payment(data_id)

    reference = payment.external_reference
    if reference.get("type") != "order_payment" or not reference.get("pending_id"):
        logger.debug("Payment %s is not an order payment", payment.id)
        return WebhookResult(processed=False, reason="not_an_order_payment")

    try:
        result = reconcile_payment(reference["pending_id"], payment)
    except PendingPaymentNotFoundError:
        logger.warning("Webhook for unknown pending payment %s", reference.get("pending_id"))
        return WebhookResult(processed=False, reason="unknown_pending_payment")

    logger.info(
        "Webhook payment %s -> pending %s: %s",
        payment.id, reference["pending_id"], result.status,
    )
    return WebhookResult(processed=True, result=result)
