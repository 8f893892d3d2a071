"""Helpers turning service errors into API responses."""

import logging

from rest_framework.response import Response

from services.exceptions import ServiceError

logger = logging.getLogger(__name__)


def error_response(exc: ServiceError) -> Response:
    """JSON body ``{"error", "message", ...}`` with the error's status code."""
    if exc.status_code >= 500:
        logger.warning("%s: %s", exc.code, exc.message)
    return Response(exc.to_dict(), status=exc.status_code)
