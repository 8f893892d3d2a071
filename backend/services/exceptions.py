"""Base exceptions shared by every service area."""


class ServiceError(Exception):
    """
    Base class for errors the HTTP layer turns into a JSON response.

    Subclasses set ``status_code`` and ``code``; ``extra`` is merged into
    the response body.
    """
    status_code = 400
    code = "error"

    def __init__(self, message: str = "", **extra):
        super().__init__(message or self.__class__.__doc__)
        self.message = message or (self.__class__.__doc__ or "").strip()
        self.extra = extra

    def to_dict(self) -> dict:
        body = {"error": self.code, "message": self.message}
        body.update(self.extra)
        return body


class ValidationError(ServiceError):
    """Request payload is malformed."""
    status_code = 400
    code = "validation_error"


class PermissionDeniedError(ServiceError):
    """Caller is not allowed to act on this resource."""
    status_code = 403
    code = "permission_denied"


class NotFoundError(ServiceError):
    """Referenced resource does not exist."""
    status_code = 404
    code = "not_found"


class ConflictError(ServiceError):
    """The resource already moved to a state that forbids this operation."""
    status_code = 409
    code = "conflict"


class DriverNotFoundError(ServiceError):
    """Caller has no active driver record."""
    status_code = 403
    code = "driver_not_found"
