"""
Offer acceptance.

Several drivers may hold a pending offer for the same order and tap
"accept" at the same moment. The winner is whoever flips its offer from
pending to accepted with a conditional UPDATE and then claims the order
with a second conditional UPDATE; the partial unique index on accepted
offers backs this up at the database level. Everybody else gets a conflict
naming what they ran into.
"""

import logging
from dataclasses import dataclass
from typing import List, Tuple

from django.db import IntegrityError, transaction
from django.db.models import Q
from django.utils import timezone

from common.datastore import compare_and_set, update_where
from drivers.models import Driver
from drivers.services import claim_for_delivery
from orders.models import Order, OrderOffer
from realtime.notifications import notify_user

from .exceptions import OfferConflictError, OfferNotFoundError

logger = logging.getLogger(__name__)


@dataclass
class AcceptanceResult:
    """Result object for offer responses."""
    offer: OrderOffer
    order: Order
    message: str = ""
    cancelled_siblings: int = 0


def _get_offer(driver: Driver, offer_id) -> OrderOffer:
    try:
        return OrderOffer.objects.select_related("order", "order__company").get(id=offer_id, driver=driver)
    except (OrderOffer.DoesNotExist, ValueError):
        raise OfferNotFoundError("Offer not found")


def _conflict_reason(offer_id, driver_id) -> str:
    """Name the terminal state another caller left this offer in."""
    offer = OrderOffer.objects.select_related("order").get(pk=offer_id)
    if offer.order.driver_id == driver_id:
        # This driver already holds the order, e.g. a repeated tap
        return OfferConflictError.NO_LONGER_AVAILABLE
    if offer.status == OrderOffer.STATUS_ACCEPTED:
        return OfferConflictError.ALREADY_ACCEPTED
    if offer.order.driver_id and offer.order.driver_id != driver_id:
        return OfferConflictError.ORDER_ALREADY_TAKEN
    return OfferConflictError.NO_LONGER_AVAILABLE


def _cancel_offer(offer_id) -> bool:
    return compare_and_set(
        OrderOffer,
        offer_id,
        "status",
        OrderOffer.STATUS_PENDING,
        status=OrderOffer.STATUS_CANCELLED,
        responded_at=timezone.now(),
    )


def cancel_sibling_offers(order_id, winning_offer_id) -> List[Tuple[int, int]]:
    """
    Cancel every other pending offer for the order.

    Returns (offer_id, driver_user_id) pairs for the offers this call
    cancelled.
    """
    siblings = list(
        OrderOffer.objects
        .filter(order_id=order_id, status=OrderOffer.STATUS_PENDING)
        .exclude(pk=winning_offer_id)
        .values_list("id", "driver__user_id")
    )
    if not siblings:
        return []

    update_where(
        OrderOffer.objects.filter(pk__in=[pk for pk, _ in siblings], status=OrderOffer.STATUS_PENDING),
        status=OrderOffer.STATUS_CANCELLED,
        responded_at=timezone.now(),
    )
    return siblings


def cancel_other_offers_for_driver(driver_id, winning_offer_id) -> int:
    """The winner is busy now; their other pending offers go away."""
    return update_where(
        OrderOffer.objects
        .filter(driver_id=driver_id, status=OrderOffer.STATUS_PENDING)
        .exclude(pk=winning_offer_id),
        status=OrderOffer.STATUS_CANCELLED,
        responded_at=timezone.now(),
    )


def _claim_order(order_id, driver: Driver) -> bool:
    # Free order, or one pre-assigned to this very driver
    return update_where(
        Order.objects.filter(
            Q(driver__isnull=True) | Q(driver=driver),
            pk=order_id,
            status=Order.STATUS_AWAITING_DRIVER,
        ),
        driver=driver,
        status=Order.STATUS_OUT_FOR_DELIVERY,
        queue_position=None,
    ) == 1


def accept_offer(driver: Driver, offer_id, order_id=None) -> AcceptanceResult:
    """
    Accept an order offer for a driver.

    Args:
        driver: Driver accepting (already resolved from the caller)
        offer_id: OrderOffer id
        order_id: Optional order id the client believes the offer is for

    Returns:
        AcceptanceResult for the winning driver

    Raises:
        OfferNotFoundError: no such offer for this driver
        OfferConflictError: someone else won, or the offer is over
    """
    offer = _get_offer(driver, offer_id)
    if order_id is not None and str(offer.order_id) != str(order_id):
        raise OfferNotFoundError("Offer not found for this order")

    order = offer.order

    if offer.status != OrderOffer.STATUS_PENDING:
        raise OfferConflictError(_conflict_reason(offer.pk, driver.id))

    if order.driver_id and order.driver_id != driver.id:
        _cancel_offer(offer.pk)
        raise OfferConflictError(OfferConflictError.ORDER_ALREADY_TAKEN)

    try:
        with transaction.atomic():
            won = compare_and_set(
                OrderOffer,
                offer.pk,
                "status",
                OrderOffer.STATUS_PENDING,
                status=OrderOffer.STATUS_ACCEPTED,
                responded_at=timezone.now(),
            )
            if not won:
                raise OfferConflictError(_conflict_reason(offer.pk, driver.id))

            if not _claim_order(order.pk, driver):
                raise OfferConflictError(OfferConflictError.ORDER_ALREADY_TAKEN)

            # One delivery at a time: the driver must be free, or waiting on this very order
            free_statuses = [Driver.STATUS_AVAILABLE]
            if order.driver_id == driver.id:
                free_statuses.append(Driver.STATUS_PENDING_ACCEPTANCE)
            if not claim_for_delivery(driver.id, free_statuses):
                raise OfferConflictError(OfferConflictError.NO_LONGER_AVAILABLE)
    except IntegrityError:
        # Another offer for this order reached accepted first
        logger.info("Offer %s lost to an accepted sibling on order %s", offer.pk, order.pk)
        _cancel_offer(offer.pk)
        raise OfferConflictError(OfferConflictError.ALREADY_ACCEPTED)
    except OfferConflictError as e:
        logger.info("Offer %s for order %s rejected: %s", offer.pk, order.pk, e.reason)
        if e.reason == OfferConflictError.ORDER_ALREADY_TAKEN:
            _cancel_offer(offer.pk)
        raise

    logger.info("Driver %s accepted offer %s for order %s", driver.id, offer.pk, order.pk)

    # The assignment holds from here on; nothing below may undo it
    siblings: List[Tuple[int, int]] = []
    try:
        siblings = cancel_sibling_offers(order.pk, offer.pk)
    except Exception:
        logger.exception("Failed to cancel sibling offers for order %s", order.pk)

    try:
        cancel_other_offers_for_driver(driver.id, offer.pk)
    except Exception:
        logger.exception("Failed to cancel other offers held by driver %s", driver.id)

    for _, user_id in siblings:
        notify_user(
            user_id,
            "Delivery taken",
            f"Order #{order.short_id} was accepted by another driver.",
            data={"type": "offer_cancelled", "order_id": str(order.id)},
        )

    notify_user(
        order.company.owner_id,
        "Driver accepted delivery",
        f"{driver.name} accepted order #{order.short_id}.",
        notification_type="success",
        data={"type": "driver_accepted", "order_id": str(order.id), "driver_id": driver.id},
    )

    offer.refresh_from_db()
    order.refresh_from_db()
    return AcceptanceResult(
        offer=offer,
        order=order,
        message="Delivery accepted.",
        cancelled_siblings=len(siblings),
    )


def decline_offer(driver: Driver, offer_id) -> AcceptanceResult:
    """
    Decline a pending offer.

    When the last pending offer for an unassigned order is declined the
    store owner is told; the order itself is left awaiting a driver.

    Raises:
        OfferNotFoundError
        OfferConflictError: offer is no longer pending
    """
    offer = _get_offer(driver, offer_id)
    order = offer.order

    if not _cancel_offer(offer.pk):
        raise OfferConflictError(_conflict_reason(offer.pk, driver.id))

    logger.info("Driver %s declined offer %s for order %s", driver.id, offer.pk, order.pk)

    still_open = OrderOffer.objects.filter(order=order, status=OrderOffer.STATUS_PENDING).exists()
    order.refresh_from_db()
    if not still_open and order.driver_id is None and order.status == Order.STATUS_AWAITING_DRIVER:
        notify_user(
            order.company.owner_id,
            "All drivers declined",
            f"Every driver declined order #{order.short_id}.",
            notification_type="warning",
            data={"type": "all_offers_declined", "order_id": str(order.id)},
        )

    offer.refresh_from_db()
    return AcceptanceResult(offer=offer, order=order, message="Offer declined.")
