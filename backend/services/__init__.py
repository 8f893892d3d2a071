"""
Services package - Business logic layer.

This package contains all business logic services that operate on Django models
but are decoupled from the HTTP/WebSocket layer.

Modules:
    - payments: Checkout drafts and exactly-once order materialization
    - matching: Driver offers, acceptance, assignment and queues
"""

from .exceptions import (
    ConflictError,
    DriverNotFoundError,
    NotFoundError,
    PermissionDeniedError,
    ServiceError,
    ValidationError,
)

__all__ = [
    "ServiceError",
    "ValidationError",
    "PermissionDeniedError",
    "NotFoundError",
    "ConflictError",
    "DriverNotFoundError",
]
