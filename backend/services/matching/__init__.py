"""
Driver matching and delivery service.

This module handles:
    - Offering orders to candidate drivers
    - Resolving racing acceptances to exactly one driver
    - Direct assignment and per-driver queues
    - Store-side status changes and cancellation
"""

from .assignment import accept_assigned_order, assign_driver, complete_delivery
from .driver_queue import process_driver_queue, renumber_queue
from .offer_acceptance import accept_offer, decline_offer
from .offer_dispatch import dispatch_offers
from .order_status import advance_order_status, cancel_order

from .exceptions import (
    DriverNotFoundError,
    InvalidStatusError,
    OfferConflictError,
    OfferNotFoundError,
    OrderNotFoundError,
)

__all__ = [
    # Offers
    "dispatch_offers",
    "accept_offer",
    "decline_offer",
    # Assignment and queue
    "assign_driver",
    "accept_assigned_order",
    "complete_delivery",
    "process_driver_queue",
    "renumber_queue",
    # Store actions
    "advance_order_status",
    "cancel_order",
    # Exceptions
    "DriverNotFoundError",
    "InvalidStatusError",
    "OfferConflictError",
    "OfferNotFoundError",
    "OrderNotFoundError",
]
