"""
Stale-offer timeout monitor.

Periodic sweep over orders stuck in awaiting_driver. Each stale order is
escalated to the store owner (and its pre-assigned driver, if any) at most
once per threshold window; the EscalationEvent log is the record of what
was already sent. The sweep never changes order or driver state: a person
decides whether to reassign or cancel.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from orders.models import EscalationEvent, Order
from realtime.notifications import notify_user

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    checked: int = 0
    escalated: int = 0
    skipped: int = 0

    def to_dict(self):
        return {"checked": self.checked, "escalated": self.escalated, "skipped": self.skipped}


def _escalate(order: Order, minutes_waiting: int) -> None:
    notify_user(
        order.company.owner_id,
        "Delivery waiting for a driver",
        f"Order #{order.short_id} has been waiting {minutes_waiting} min for a driver to accept.",
        notification_type="warning",
        data={
            "type": EscalationEvent.KIND_DRIVER_ACCEPTANCE_TIMEOUT,
            "order_id": str(order.id),
            "minutes_waiting": minutes_waiting,
        },
    )
    if order.driver_id and order.driver.user_id:
        notify_user(
            order.driver.user_id,
            "Delivery waiting for you",
            f"Order #{order.short_id} has been waiting {minutes_waiting} min. Please accept it.",
            notification_type="warning",
            data={
                "type": EscalationEvent.KIND_DRIVER_ACCEPTANCE_TIMEOUT,
                "order_id": str(order.id),
                "minutes_waiting": minutes_waiting,
            },
        )


def check_stale_offers(threshold_minutes: int = None, now=None) -> SweepResult:
    """
    Escalate orders that have awaited a driver longer than the threshold.

    Args:
        threshold_minutes: Defaults to STALE_OFFER_THRESHOLD_MINUTES; also
            the dedup window
        now: Reference time (tests)

    Returns:
        SweepResult with the number of escalations issued
    """
    threshold = threshold_minutes or settings.STALE_OFFER_THRESHOLD_MINUTES
    now = now or timezone.now()
    cutoff = now - timedelta(minutes=threshold)

    stale_ids = list(
        Order.objects
        .filter(status=Order.STATUS_AWAITING_DRIVER, updated_at__lt=cutoff)
        .order_by("updated_at")
        .values_list("pk", flat=True)
    )

    result = SweepResult(checked=len(stale_ids))
    for order_id in stale_ids:
        with transaction.atomic():
            # Lock the order so two overlapping sweeps cannot both escalate it
            order = (
                Order.objects.select_for_update()
                .select_related("company", "driver")
                .filter(pk=order_id, status=Order.STATUS_AWAITING_DRIVER)
                .first()
            )
            if order is None:
                continue

            already_escalated = EscalationEvent.objects.filter(
                order=order,
                kind=EscalationEvent.KIND_DRIVER_ACCEPTANCE_TIMEOUT,
                created_at__gte=cutoff,
            ).exists()
            if already_escalated:
                result.skipped += 1
                continue

            minutes_waiting = int((now - order.updated_at).total_seconds() // 60)
            EscalationEvent.objects.create(order=order, minutes_waiting=minutes_waiting)
            _escalate(order, minutes_waiting)
            result.escalated += 1

    if result.escalated:
        logger.info("Stale-offer sweep escalated %d order(s)", result.escalated)
    return result
