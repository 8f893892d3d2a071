"""
Notification helpers for the fan-out boundary.

Every caller goes through notify_user(), which defers delivery until the
surrounding transaction commits and hands it to a Celery task. Delivery
failures are logged and retried by Celery; they never propagate back into
the operation that triggered them.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from asgiref.sync import async_to_sync
from channels.layers import get_channel_layer
from django.db import transaction

logger = logging.getLogger(__name__)


def notify_user(
    user_id: Optional[int],
    title: str,
    message: str,
    notification_type: str = "info",
    data: Dict[str, Any] = None,
) -> bool:
    """
    Queue a notification for a user once the current transaction commits.

    Args:
        user_id: Target user ID (drivers that never signed in have none)
        title: Short headline
        message: Body text
        notification_type: info, success or warning
        data: Machine-readable payload (event type, order id, ...)

    Returns:
        True if a delivery was scheduled, False otherwise
    """
    if not user_id:
        return False

    from .tasks import send_notification_task

    payload = dict(data or {})

    def _dispatch():
        send_notification_task.delay(user_id, title, message, notification_type, payload)

    try:
        transaction.on_commit(_dispatch, robust=True)
    except Exception:
        logger.exception("Failed to schedule notification for user %s", user_id)
        return False
    return True


def push_to_user(user_id: int, event: Dict[str, Any]) -> bool:
    """
    Send an event to a user's personal group: user_<user_id>

    Returns:
        True if sent, False when no channel layer is configured
    """
    channel_layer = get_channel_layer()
    if channel_layer is None:
        logger.warning("No channel layer available for push to user_%s", user_id)
        return False

    logger.debug("WS -> user_%s: %s", user_id, event)
    async_to_sync(channel_layer.group_send)(f"user_{user_id}", {"type": "notification", **event})
    return True
