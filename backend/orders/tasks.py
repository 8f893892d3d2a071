"""Celery tasks for order background processing."""

import logging

from celery import shared_task

logger = logging.getLogger(__name__)


@shared_task
def check_stale_offers_task():
    """
    Periodic stale-offer sweep, scheduled by Celery beat
    (see CELERY_BEAT_SCHEDULE).
    """
    from orders.services import check_stale_offers

    result = check_stale_offers()
    return result.escalated
