"""
Celery application for background and scheduled work.

The beat schedule lives in settings (CELERY_BEAT_SCHEDULE).
"""
import os

from celery import Celery

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'config.settings')

app = Celery('config')
app.config_from_object('django.conf:settings', namespace='CELERY')
app.autodiscover_tasks()
