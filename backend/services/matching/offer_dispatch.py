"""
Offer dispatch.

Creates one pending OrderOffer per candidate driver for an order that needs
delivery and moves the order to awaiting_driver. Which candidate actually
gets the job is decided later by offer_acceptance.accept_offer().
"""

import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from django.db import transaction

from common.datastore import compare_and_set
from drivers.models import Driver
from orders.models import Order, OrderOffer
from realtime.notifications import notify_user

from .exceptions import InvalidStatusError

logger = logging.getLogger(__name__)


DISPATCHABLE_STATUSES = [
    Order.STATUS_CONFIRMED,
    Order.STATUS_PREPARING,
    Order.STATUS_READY,
    Order.STATUS_AWAITING_DRIVER,
]


@dataclass
class DispatchResult:
    """Result object for dispatch operations."""
    order: Order
    offers: List[OrderOffer] = field(default_factory=list)
    message: str = ""

    @property
    def dispatched(self) -> bool:
        return bool(self.offers)


def find_candidate_drivers(order: Order, driver_ids: Optional[Iterable[int]] = None):
    """
    Active, free drivers of the order's store that have not been offered
    this order yet.
    """
    queryset = (
        Driver.objects
        .filter(
            company_id=order.company_id,
            is_active=True,
            is_available=True,
            status=Driver.STATUS_AVAILABLE,
        )
        .exclude(offers__order=order)
        .select_related("user")
        .order_by("name", "id")
    )
    if driver_ids is not None:
        queryset = queryset.filter(id__in=list(driver_ids))
    return queryset


def _notify_offer(offer: OrderOffer, order: Order) -> None:
    if not offer.driver.user_id:
        return
    notify_user(
        offer.driver.user_id,
        "New delivery available",
        f"Order #{order.short_id} for {order.delivery_address or order.customer_name}",
        data={
            "type": "order_offer",
            "offer_id": offer.id,
            "order_id": str(order.id),
            "customer_name": order.customer_name,
            "delivery_address": order.delivery_address,
            "total": str(order.total),
        },
    )


def dispatch_offers(order: Order, driver_ids: Optional[Iterable[int]] = None) -> DispatchResult:
    """
    Offer an order to every candidate driver.

    Args:
        order: Order needing a driver
        driver_ids: Optional subset of drivers to offer to

    Returns:
        DispatchResult with the offers created by this call

    Raises:
        InvalidStatusError: order is not in a dispatchable state or was
            already handed to a specific driver
    """
    if order.status not in DISPATCHABLE_STATUSES:
        raise InvalidStatusError(f"Cannot dispatch an order that is {order.status}")
    if order.driver_id:
        raise InvalidStatusError("Order is already assigned to a driver")

    candidates = list(find_candidate_drivers(order, driver_ids))
    if not candidates:
        logger.info("No available drivers for order %s", order.id)
        notify_user(
            order.company.owner_id,
            "No drivers available",
            f"No available driver could be offered order #{order.short_id}.",
            notification_type="warning",
            data={"type": "no_drivers_available", "order_id": str(order.id)},
        )
        return DispatchResult(order=order, message="No available drivers found.")

    offers: List[OrderOffer] = []
    with transaction.atomic():
        moved = compare_and_set(
            Order,
            order.pk,
            "status",
            DISPATCHABLE_STATUSES,
            extra_filters={"driver__isnull": True},
            status=Order.STATUS_AWAITING_DRIVER,
        )
        if not moved:
            raise InvalidStatusError("Order changed state before dispatch")

        for driver in candidates:
            # unique (order, driver): a concurrent dispatch may have got here first
            offer, created = OrderOffer.objects.get_or_create(
                order=order,
                driver=driver,
                defaults={"company_id": order.company_id},
            )
            if created:
                offers.append(offer)

    order.status = Order.STATUS_AWAITING_DRIVER
    for offer in offers:
        _notify_offer(offer, order)

    logger.info("Dispatched %d offer(s) for order %s", len(offers), order.id)
    return DispatchResult(
        order=order,
        offers=offers,
        message=f"Offered to {len(offers)} driver(s).",
    )
