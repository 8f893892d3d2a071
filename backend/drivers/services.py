"""Driver lookup and availability helpers used by the matching services."""

import logging
from typing import Dict

from common.datastore import update_where
from drivers.models import Driver
from services.exceptions import DriverNotFoundError

logger = logging.getLogger(__name__)


def get_driver_for_user(user, company_id: int = None) -> Driver:
    """
    Resolve the caller to an active driver record.

    Raises:
        DriverNotFoundError: anonymous caller, no driver record, inactive
            driver, or driver of another company
    """
    if not user or not user.is_authenticated:
        raise DriverNotFoundError("Driver profile not found")

    queryset = Driver.objects.select_related("company").filter(user=user, is_active=True)
    if company_id is not None:
        queryset = queryset.filter(company_id=company_id)

    driver = queryset.first()
    if driver is None:
        raise DriverNotFoundError("Driver profile not found")
    return driver


def set_driver_state(driver_id: int, status: str, is_available: bool) -> None:
    """Set status and availability together so they never disagree."""
    update_where(Driver.objects.filter(pk=driver_id), status=status, is_available=is_available)
    logger.debug("Driver %s -> %s (available=%s)", driver_id, status, is_available)


def mark_in_delivery(driver_id: int) -> None:
    set_driver_state(driver_id, Driver.STATUS_IN_DELIVERY, False)


def mark_pending_acceptance(driver_id: int) -> None:
    set_driver_state(driver_id, Driver.STATUS_PENDING_ACCEPTANCE, False)


def mark_available(driver_id: int) -> None:
    set_driver_state(driver_id, Driver.STATUS_AVAILABLE, True)


def claim_for_delivery(driver_id: int, from_statuses) -> bool:
    """
    Put a driver in delivery only if they are in one of ``from_statuses``.
    Returns False when the driver is already busy with something else.
    """
    claimed = update_where(
        Driver.objects.filter(pk=driver_id, status__in=list(from_statuses)),
        status=Driver.STATUS_IN_DELIVERY,
        is_available=False,
    )
    return claimed == 1


def lock_drivers(*driver_ids) -> Dict[int, Driver]:
    """
    Row-lock several drivers at once, always in primary key order, so two
    transactions touching the same pair cannot wait on each other.
    Must run inside transaction.atomic().
    """
    ids = sorted({pk for pk in driver_ids if pk is not None})
    queryset = Driver.objects.select_for_update().select_related("company").filter(pk__in=ids).order_by("pk")
    return {driver.pk: driver for driver in queryset}
