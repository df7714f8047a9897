import logging

from celery import shared_task

from . import reclaimer

logger = logging.getLogger(__name__)


@shared_task(ignore_result=True)
def reclaim_stale_posted_media():
    """Periodic sweep scheduled by CELERY_BEAT_SCHEDULE and once at worker start."""
    reclaimed = reclaimer.reclaim_stale_posted_media()
    logger.info("Stale posted media sweep finished: %d reclaimed", reclaimed)
    return reclaimed
