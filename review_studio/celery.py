import os
from celery import Celery
from celery.signals import worker_ready

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "review_studio.settings")

celery_app = Celery("review_studio")
celery_app.config_from_object("django.conf:settings", namespace="CELERY")
celery_app.autodiscover_tasks()


@worker_ready.connect
def schedule_startup_reclaim(sender=None, **kwargs):
    """Run one reclaim sweep shortly after a worker comes up; beat covers the rest."""
    from django.conf import settings

    celery_app.send_task(
        "videos.tasks.reclaim_stale_posted_media",
        countdown=settings.RECLAIM_STARTUP_DELAY_SECONDS,
    )
