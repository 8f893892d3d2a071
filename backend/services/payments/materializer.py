"""
Order materialization.

Turns a claimed checkout draft into an Order with its line items. Only the
caller that won the pending -> processing claim on the ledger may call
materialize_order(), and it must do so inside transaction.atomic() so that
a failure leaves no partial rows behind.
"""

import logging
from decimal import Decimal
from typing import Any, Dict, Optional

from django.db.models import F, Q

from orders.models import Coupon, Customer, Order, OrderItem
from payments.models import PendingPayment

logger = logging.getLogger(__name__)


def _money(value: Any) -> Decimal:
    return Decimal(str(value or 0))


def resolve_customer(draft: Dict[str, Any]) -> Customer:
    """Find the buyer by email or phone, creating the record if absent."""
    email = (draft.get("customer_email") or "").strip() or None
    phone = (draft.get("customer_phone") or "").strip()

    lookup = Q()
    if email:
        lookup |= Q(email__iexact=email)
    if phone:
        lookup |= Q(phone=phone)

    customer = None
    if email or phone:
        customer = Customer.objects.filter(lookup).order_by("created_at").first()

    if customer is None:
        customer = Customer.objects.create(
            name=draft.get("customer_name", ""),
            email=email,
            phone=phone,
        )
        logger.debug("Created customer %s for checkout", customer.id)
    return customer


def _resolve_coupon(company_id: int, coupon_id: Optional[int]) -> Optional[Coupon]:
    if not coupon_id:
        return None
    return Coupon.objects.filter(id=coupon_id, company_id=company_id).first()


def materialize_order(pending: PendingPayment, gateway_payment_id: Optional[str] = None) -> Order:
    """
    Create the order and its items from ``pending.draft_order``.

    Raises whatever the database raises; the caller owns the transaction
    and the ledger revert.
    """
    draft = pending.draft_order
    customer = resolve_customer(draft)
    coupon = _resolve_coupon(pending.company_id, draft.get("coupon_id"))

    order = Order.objects.create(
        company_id=pending.company_id,
        customer=customer,
        customer_name=draft.get("customer_name", customer.name),
        customer_phone=draft.get("customer_phone", ""),
        customer_email=draft.get("customer_email") or None,
        order_type=draft.get("order_type", Order.TYPE_DELIVERY),
        delivery_address=draft.get("delivery_address", ""),
        payment_method=draft.get("payment_method", "pix"),
        payment_status=Order.PAYMENT_PAID,
        gateway_payment_id=gateway_payment_id,
        subtotal=_money(draft.get("subtotal")),
        delivery_fee=_money(draft.get("delivery_fee")),
        discount_amount=_money(draft.get("discount_amount")),
        total=_money(draft.get("total")),
        coupon=coupon,
        notes=draft.get("notes") or None,
        status=Order.STATUS_PENDING,
    )

    OrderItem.objects.bulk_create([
        OrderItem(
            order=order,
            product_id=str(item["product_id"]),
            product_name=item["product_name"],
            quantity=int(item["quantity"]),
            unit_price=_money(item["unit_price"]),
            total_price=_money(item["total_price"]),
            options=item.get("options"),
            notes=item.get("notes") or None,
        )
        for item in draft.get("items", [])
    ])

    if coupon is not None:
        Coupon.objects.filter(pk=coupon.pk).update(current_uses=F("current_uses") + 1)

    logger.info(
        "Materialized order %s from pending payment %s (%d items)",
        order.id, pending.id, len(draft.get("items", [])),
    )
    return order
