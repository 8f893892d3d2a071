"""Custom exceptions for driver matching and delivery."""

from services.exceptions import ConflictError, DriverNotFoundError, NotFoundError


class OrderNotFoundError(NotFoundError):
    """Raised when an order cannot be found."""
    code = "order_not_found"


class OfferNotFoundError(NotFoundError):
    """Raised when an order offer cannot be found for this driver."""
    code = "offer_not_found"


class InvalidStatusError(ConflictError):
    """Raised when an order is not in a valid state for the operation."""
    code = "invalid_status"


class OfferConflictError(ConflictError):
    """
    Raised when an acceptance lost: the offer is no longer pending or the
    order went to another driver.
    """
    code = "offer_conflict"

    ALREADY_ACCEPTED = "already_accepted"
    NO_LONGER_AVAILABLE = "no_longer_available"
    ORDER_ALREADY_TAKEN = "order_already_taken"

    MESSAGES = {
        ALREADY_ACCEPTED: "This delivery was already accepted by another driver.",
        NO_LONGER_AVAILABLE: "This delivery is no longer available.",
        ORDER_ALREADY_TAKEN: "This order was already taken by another driver.",
    }

    def __init__(self, reason: str):
        super().__init__(self.MESSAGES.get(reason, "Offer conflict"), conflict=True, reason=reason)
        self.reason = reason
