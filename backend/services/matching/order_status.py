"""
Store-side order status changes: kitchen progression and cancellation.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from common.datastore import compare_and_set, update_where
from drivers.models import Driver
from orders.models import Order, OrderOffer
from realtime.notifications import notify_user
from services.exceptions import PermissionDeniedError, ValidationError

from .driver_queue import has_active_order, process_driver_queue, renumber_queue
from .exceptions import InvalidStatusError
from .offer_dispatch import DispatchResult, dispatch_offers

logger = logging.getLogger(__name__)


TERMINAL_STATUSES = [Order.STATUS_DELIVERED, Order.STATUS_CANCELLED]


@dataclass
class StatusChangeResult:
    order: Order
    previous_status: str
    dispatch: Optional[DispatchResult] = None


def advance_order_status(actor, order: Order, new_status: str) -> StatusChangeResult:
    """
    Move an order forward along pending -> confirmed -> preparing -> ready.

    Reaching ``ready`` on a delivery order offers it to drivers when
    AUTO_DISPATCH_ON_READY is on.

    Raises:
        PermissionDeniedError, ValidationError, InvalidStatusError
    """
    if not order.company.is_managed_by(actor):
        raise PermissionDeniedError("Only the store owner can update orders")

    pipeline = Order.STORE_PIPELINE
    if new_status not in pipeline:
        raise ValidationError(f"Unknown store status: {new_status}")
    if order.status not in pipeline or pipeline.index(new_status) <= pipeline.index(order.status):
        raise InvalidStatusError(f"Cannot move order from {order.status} to {new_status}")

    previous = order.status
    if not compare_and_set(Order, order.pk, "status", previous, status=new_status):
        raise InvalidStatusError("Order was updated by someone else, reload and retry")

    order.refresh_from_db()
    logger.info("Order %s: %s -> %s", order.pk, previous, new_status)

    dispatch = None
    if (
        new_status == Order.STATUS_READY
        and order.requires_delivery
        and settings.AUTO_DISPATCH_ON_READY
    ):
        dispatch = dispatch_offers(order)
        order.refresh_from_db()

    return StatusChangeResult(order=order, previous_status=previous, dispatch=dispatch)


def cancel_order(actor, order: Order, reason: str = "") -> StatusChangeResult:
    """
    Cancel an order from any state short of delivered.

    Pending offers are cancelled. If the order was the driver's current job
    their queue moves on; if it was waiting in their queue the queue is
    renumbered.

    Raises:
        PermissionDeniedError, InvalidStatusError
    """
    if not order.company.is_managed_by(actor):
        raise PermissionDeniedError("Only the store owner can cancel orders")
    if order.status in TERMINAL_STATUSES:
        raise InvalidStatusError(f"Order is already {order.status}")

    previous = order.status
    driver_id = order.driver_id

    with transaction.atomic():
        cancelled = compare_and_set(
            Order,
            order.pk,
            "status",
            previous,
            status=Order.STATUS_CANCELLED,
            driver=None,
            queue_position=None,
        )
        if not cancelled:
            raise InvalidStatusError("Order was updated by someone else, reload and retry")

        update_where(
            OrderOffer.objects.filter(order=order, status=OrderOffer.STATUS_PENDING),
            status=OrderOffer.STATUS_CANCELLED,
            responded_at=timezone.now(),
        )

        if driver_id:
            if previous == Order.STATUS_QUEUED:
                renumber_queue(driver_id)
            elif not has_active_order(driver_id):
                process_driver_queue(driver_id)

    order.refresh_from_db()
    logger.info("Order %s cancelled from %s (%s)", order.pk, previous, reason or "no reason")

    if driver_id:
        user_id = Driver.objects.filter(pk=driver_id).values_list("user_id", flat=True).first()
        notify_user(
            user_id,
            "Order cancelled",
            f"Order #{order.short_id} was cancelled by the store.",
            notification_type="warning",
            data={"type": "order_cancelled", "order_id": str(order.id), "reason": reason},
        )

    return StatusChangeResult(order=order, previous_status=previous)
