"""
Driver queue processing.

Orders manually assigned to a busy driver wait in that driver's queue with
a 1-based queue_position. When the driver frees up the head of the queue is
promoted to awaiting_driver and the rest are renumbered so positions stay
1..K with no gaps.

Promotion runs under a row lock on the Driver so a manual assignment and a
delivery completion touching the same queue are serialized; the order
write itself is still conditional on the order being queued.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from django.db import transaction

from common.datastore import update_where
from drivers.models import Driver
from drivers.services import mark_available, mark_pending_acceptance
from orders.models import Order
from realtime.notifications import notify_user

from .exceptions import InvalidStatusError

logger = logging.getLogger(__name__)


@dataclass
class QueueResult:
    """Result of a queue promotion."""
    driver: Driver
    next_order: Optional[Order] = None
    remaining: int = 0

    def to_dict(self) -> Dict[str, Any]:
        next_order = None
        if self.next_order is not None:
            next_order = {
                "id": str(self.next_order.id),
                "status": self.next_order.status,
                "customerName": self.next_order.customer_name,
                "deliveryAddress": self.next_order.delivery_address,
                "total": str(self.next_order.total),
            }
        return {
            "driverId": self.driver.id,
            "nextOrder": next_order,
            "remainingInQueueCount": self.remaining,
        }


ACTIVE_STATUSES = [Order.STATUS_AWAITING_DRIVER, Order.STATUS_OUT_FOR_DELIVERY]


def has_active_order(driver_id: int) -> bool:
    """Driver is delivering, or has an order waiting for their acceptance."""
    return Order.objects.filter(driver_id=driver_id, status__in=ACTIVE_STATUSES).exists()


def queued_orders(driver_id: int):
    return Order.objects.filter(driver_id=driver_id, status=Order.STATUS_QUEUED).order_by("queue_position")


def next_queue_position(driver_id: int) -> int:
    last = queued_orders(driver_id).exclude(queue_position__isnull=True).last()
    return (last.queue_position if last else 0) + 1


def renumber_queue(driver_id: int) -> int:
    """
    Close gaps in a driver's queue. Walks upwards so every target slot is
    already free when it is written.

    Returns:
        Number of orders left in the queue
    """
    entries = list(queued_orders(driver_id).values_list("pk", "queue_position"))
    for position, (pk, current) in enumerate(entries, start=1):
        if current != position:
            update_where(
                Order.objects.filter(pk=pk, status=Order.STATUS_QUEUED),
                queue_position=position,
            )
    return len(entries)


def process_driver_queue(driver_id: int) -> QueueResult:
    """
    Promote the next queued order for a driver, or free the driver.

    Args:
        driver_id: Driver whose current delivery just ended

    Returns:
        QueueResult with the promoted order (if any) and the queue length

    Raises:
        InvalidStatusError: the driver still has an active order
    """
    with transaction.atomic():
        driver = Driver.objects.select_for_update().get(pk=driver_id)

        # Deliveries are serial: nothing moves until the current one ends
        if has_active_order(driver.id):
            raise InvalidStatusError("Driver still has an active delivery")

        promoted = None
        for head in queued_orders(driver.id):
            moved = update_where(
                Order.objects.filter(pk=head.pk, driver=driver, status=Order.STATUS_QUEUED),
                status=Order.STATUS_AWAITING_DRIVER,
                queue_position=None,
            )
            if moved:
                promoted = head
                break

        if promoted is None:
            mark_available(driver.id)
            logger.info("Driver %s queue empty, now available", driver.id)
            driver.refresh_from_db()
            return QueueResult(driver=driver)

        mark_pending_acceptance(driver.id)
        remaining = renumber_queue(driver.id)

    promoted.refresh_from_db()
    driver.refresh_from_db()
    logger.info(
        "Driver %s promoted order %s from queue (%d left)",
        driver.id, promoted.id, remaining,
    )

    notify_user(
        driver.user_id,
        "Next delivery",
        f"Order #{promoted.short_id} is waiting for you to accept.",
        data={
            "type": "queue_order_promoted",
            "order_id": str(promoted.id),
            "remaining_in_queue": remaining,
        },
    )
    return QueueResult(driver=driver, next_order=promoted, remaining=remaining)
