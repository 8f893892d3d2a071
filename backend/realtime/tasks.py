"""Celery tasks for notification delivery."""

import logging

from celery import shared_task

logger = logging.getLogger(__name__)


@shared_task(bind=True, autoretry_for=(Exception,), retry_backoff=True, max_retries=3)
def send_notification_task(self, user_id: int, title: str, message: str, notification_type: str, data: dict):
    """
    Persist a notification and push it to the user's open sockets.

    The row is written first so the notification survives a failed push.
    """
    from realtime.models import Notification
    from realtime.notifications import push_to_user

    notification = Notification.objects.create(
        user_id=user_id,
        title=title,
        message=message,
        type=notification_type,
        data=data,
    )
    logger.info("Notification %s stored for user %s (%s)", notification.id, user_id, data.get("type"))

    push_to_user(user_id, {
        "id": notification.id,
        "title": title,
        "message": message,
        "notification_type": notification_type,
        "data": data,
    })
    return notification.id
