"""
Celery application

Uses Redis as broker. Tasks are discovered from every installed app's
tasks.py; configuration is read from Django settings (CELERY_* keys).
"""
import os

from celery import Celery

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "storefront.settings.settings")

app = Celery("storefront")
app.config_from_object("django.conf:settings", namespace="CELERY")
app.autodiscover_tasks()
