"""
Direct driver assignment and the delivery lifecycle after it.

Store owners can hand an order straight to a driver instead of offering it
around. A free driver gets the order as awaiting_driver and must accept it;
a busy driver gets it appended to their queue.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from django.db import transaction
from django.utils import timezone

from common.datastore import compare_and_set, update_where
from drivers.models import Driver
from drivers.services import lock_drivers, mark_in_delivery, mark_pending_acceptance
from orders.models import Order, OrderOffer
from realtime.notifications import notify_user
from services.exceptions import NotFoundError, PermissionDeniedError

from .driver_queue import (
    QueueResult,
    has_active_order,
    next_queue_position,
    process_driver_queue,
    queued_orders,
    renumber_queue,
)
from .exceptions import InvalidStatusError, OfferConflictError, OrderNotFoundError

logger = logging.getLogger(__name__)


ASSIGNABLE_STATUSES = [
    Order.STATUS_READY,
    Order.STATUS_AWAITING_DRIVER,
    Order.STATUS_QUEUED,
]


@dataclass
class AssignmentResult:
    """Result object for assignment operations."""
    order: Order
    driver: Driver
    queued: bool = False
    message: str = ""
    queue: Optional[QueueResult] = None


def _release_previous_driver(driver_id: int, previous_status: str) -> None:
    if previous_status == Order.STATUS_QUEUED:
        renumber_queue(driver_id)
        return
    # The order was the one they were about to accept
    if not has_active_order(driver_id):
        process_driver_queue(driver_id)


def assign_driver(actor, order: Order, driver_id: int) -> AssignmentResult:
    """
    Assign an order to a specific driver.

    Args:
        actor: User performing the assignment (store owner or superuser)
        order: Order to assign
        driver_id: Target driver id

    Returns:
        AssignmentResult; ``queued`` tells whether the driver was busy

    Raises:
        PermissionDeniedError: actor does not manage the store
        NotFoundError: driver missing, inactive, or from another store
        InvalidStatusError: order cannot be assigned in its current state
    """
    if not order.company.is_managed_by(actor):
        raise PermissionDeniedError("Only the store owner can assign drivers")
    if order.status not in ASSIGNABLE_STATUSES:
        raise InvalidStatusError(f"Cannot assign a driver to an order that is {order.status}")

    previous_driver_id = order.driver_id

    with transaction.atomic():
        # Both queues may change; lock new and previous driver in pk order
        locked = lock_drivers(driver_id, previous_driver_id)
        driver = locked.get(driver_id)
        if driver is None or driver.company_id != order.company_id or not driver.is_active:
            raise NotFoundError("Driver not found")

        if previous_driver_id == driver.id:
            raise InvalidStatusError("Order is already assigned to this driver")

        update_where(
            OrderOffer.objects.filter(order=order, status=OrderOffer.STATUS_PENDING),
            status=OrderOffer.STATUS_CANCELLED,
            responded_at=timezone.now(),
        )

        queued = driver.is_busy
        if queued:
            changes = {
                "status": Order.STATUS_QUEUED,
                "driver": driver,
                "queue_position": next_queue_position(driver.id),
            }
        else:
            changes = {
                "status": Order.STATUS_AWAITING_DRIVER,
                "driver": driver,
                "queue_position": None,
            }

        moved = compare_and_set(Order, order.pk, "status", order.status, **changes)
        if not moved:
            raise InvalidStatusError("Order changed state during assignment")

        if not queued:
            mark_pending_acceptance(driver.id)

        if previous_driver_id:
            _release_previous_driver(previous_driver_id, order.status)

    order.refresh_from_db()
    logger.info(
        "Order %s assigned to driver %s (%s)",
        order.pk, driver.id, "queued" if queued else "awaiting acceptance",
    )

    if not queued:
        notify_user(
            driver.user_id,
            "New delivery assigned",
            f"Order #{order.short_id} was assigned to you.",
            data={"type": "order_assigned", "order_id": str(order.id)},
        )

    return AssignmentResult(
        order=order,
        driver=driver,
        queued=queued,
        message=(
            f"Driver is busy; order queued at position {order.queue_position}."
            if queued else "Driver notified."
        ),
    )


def accept_assigned_order(driver: Driver, order_id) -> AssignmentResult:
    """
    Driver accepts an order that was assigned to them directly.

    Raises:
        OrderNotFoundError: no such order in the driver's store
        OfferConflictError: the order is no longer waiting for this driver
    """
    order = Order.objects.select_related("company").filter(pk=order_id, company_id=driver.company_id).first()
    if order is None:
        raise OrderNotFoundError("Order not found")

    with transaction.atomic():
        won = compare_and_set(
            Order,
            order.pk,
            "status",
            Order.STATUS_AWAITING_DRIVER,
            extra_filters={"driver": driver},
            status=Order.STATUS_OUT_FOR_DELIVERY,
        )
        if won:
            mark_in_delivery(driver.id)

    if not won:
        order.refresh_from_db()
        if order.driver_id and order.driver_id != driver.id:
            raise OfferConflictError(OfferConflictError.ORDER_ALREADY_TAKEN)
        raise OfferConflictError(OfferConflictError.NO_LONGER_AVAILABLE)

    order.refresh_from_db()
    driver.refresh_from_db()
    logger.info("Driver %s accepted assigned order %s", driver.id, order.pk)

    notify_user(
        order.company.owner_id,
        "Driver accepted delivery",
        f"{driver.name} is on the way with order #{order.short_id}.",
        notification_type="success",
        data={"type": "driver_accepted", "order_id": str(order.id), "driver_id": driver.id},
    )
    return AssignmentResult(order=order, driver=driver, message="Delivery accepted.")


def complete_delivery(driver: Driver, order_id) -> AssignmentResult:
    """
    Mark the driver's current delivery as delivered and move their queue.

    Raises:
        OrderNotFoundError
        InvalidStatusError: order is not out for delivery with this driver
    """
    order = Order.objects.select_related("company").filter(pk=order_id, driver=driver).first()
    if order is None:
        raise OrderNotFoundError("Order not found")

    done = compare_and_set(
        Order,
        order.pk,
        "status",
        Order.STATUS_OUT_FOR_DELIVERY,
        extra_filters={"driver": driver},
        status=Order.STATUS_DELIVERED,
    )
    if not done:
        raise InvalidStatusError(f"Order is {order.status}, not out for delivery")

    order.refresh_from_db()
    logger.info("Driver %s delivered order %s", driver.id, order.pk)

    notify_user(
        order.company.owner_id,
        "Order delivered",
        f"{driver.name} delivered order #{order.short_id}.",
        notification_type="success",
        data={"type": "order_delivered", "order_id": str(order.id), "driver_id": driver.id},
    )

    if has_active_order(driver.id):
        # Another order is still waiting on this driver; the queue stays put
        driver.refresh_from_db()
        queue = QueueResult(driver=driver, remaining=queued_orders(driver.id).count())
    else:
        queue = process_driver_queue(driver.id)
    return AssignmentResult(
        order=order,
        driver=queue.driver,
        message="Delivery completed.",
        queue=queue,
    )
