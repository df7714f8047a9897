"""
Reclaims storage for posted media nobody is talking about any more.

An item qualifies once it has been Posted for longer than the grace period
and has received no comment or review since it was posted. Its objects and
its live row are deleted; VideoStatusEvent history is kept.
"""
import logging
from datetime import datetime, timedelta

from botocore.exceptions import BotoCoreError, ClientError
from django.conf import settings
from django.utils import timezone

from .models import MediaItem
from .s3 import ObjectStorage, PartialDeleteError, resolve_bucket
from .store import MediaStore
from .transcoder import hls_prefix

logger = logging.getLogger(__name__)


def media_object_keys(storage: ObjectStorage, item: MediaItem) -> tuple[str, list[str]]:
    """Physical bucket plus every full key belonging to the item."""
    bucket, prefix = resolve_bucket(item.bucket)
    keys = [f"{prefix}{item.object_key}"]
    if item.thumbnail_key:
        keys.append(f"{prefix}{item.thumbnail_key}")
    try:
        keys.extend(storage.list_keys(bucket, f"{prefix}{hls_prefix(item.id)}"))
    except ClientError as e:
        # No HLS output yet is fine.
        logger.debug("No HLS objects listed for %s: %s", item.id, e)
    return bucket, keys


def delete_media_objects(storage: ObjectStorage, item: MediaItem) -> int:
    bucket, keys = media_object_keys(storage, item)
    return storage.delete_keys(bucket, keys)


def reclaim_stale_posted_media(now: datetime | None = None, *, storage: ObjectStorage | None = None,
                               store: MediaStore | None = None, grace_days: int | None = None) -> int:
    now = now or timezone.now()
    storage = storage or ObjectStorage()
    store = store or MediaStore()
    grace_days = settings.RECLAIM_GRACE_DAYS if grace_days is None else grace_days
    cutoff = now - timedelta(days=grace_days)

    candidates = store.stale_posted_items(cutoff)
    reclaimed = 0
    for item in candidates:
        if store.has_feedback_since(item, item.posted_at):
            continue

        logger.info("Reclaiming stale posted media %r (%s)", item.filename, item.id)
        try:
            deleted = delete_media_objects(storage, item)
        except (BotoCoreError, ClientError, PartialDeleteError):
            # Row stays so the next sweep tries again.
            logger.exception("Failed to delete storage objects for %s", item.id)
            continue

        store.delete_item(item)
        reclaimed += 1
        logger.info("Reclaimed %s: %d object(s) deleted", item.id, deleted)

    if reclaimed:
        logger.info("Reclaimed %d of %d stale posted item(s)", reclaimed, len(candidates))
    return reclaimed
