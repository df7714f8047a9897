import logging
from datetime import datetime

from django.utils import timezone

from .jobs import HlsPackage
from .models import Comment, MediaItem, Review

logger = logging.getLogger(__name__)

ERROR_MESSAGE_LIMIT = 200

Status = MediaItem.ProcessingStatus

PROCESSING_FIELDS = ("processing_status", "processing_progress", "processing_step", "hls_ready")


def failure_step(message: str) -> str:
    return f"error: {message[:ERROR_MESSAGE_LIMIT]}"


class MediaStore:
    """Reads and writes the MediaItem fields the transcode queue and reclaimer own."""

    def _update(self, media_id, **fields) -> int:
        fields["updated_at"] = timezone.now()
        return MediaItem.objects.filter(pk=media_id).update(**fields)

    def mark_queued(self, media_id):
        self._update(media_id, processing_status=Status.QUEUED, processing_progress=0, processing_step=None)

    def mark_processing(self, media_id):
        self._update(media_id, processing_status=Status.PROCESSING, processing_progress=0,
                     processing_step="downloading")

    def report_progress(self, media_id, step: str, progress: int):
        progress = max(0, min(100, int(progress)))
        self._update(media_id, processing_status=Status.PROCESSING, processing_progress=progress,
                     processing_step=step)

    def mark_completed(self, media_id, package: HlsPackage):
        fields = dict(
            processing_status=Status.COMPLETED,
            processing_progress=100,
            processing_step=None,
            hls_ready=True,
            hls_master_key=package.master_key,
        )
        if package.thumbnail_key:
            fields["thumbnail_key"] = package.thumbnail_key
        self._update(media_id, **fields)

    def mark_failed(self, media_id, message: str):
        self._update(media_id, processing_status=Status.FAILED, processing_progress=0,
                     processing_step=failure_step(message))

    def processing_fields(self, media_id) -> dict | None:
        row = MediaItem.objects.filter(pk=media_id).values(*PROCESSING_FIELDS).first()
        if row is None:
            return None
        row["processing_progress"] = row["processing_progress"] or 0
        return row

    def stuck_items(self):
        return list(
            MediaItem.objects.filter(
                processing_status__in=[Status.QUEUED, Status.PROCESSING],
                hls_ready=False,
            ).order_by("uploaded_at")
        )

    def stale_posted_items(self, cutoff: datetime):
        return list(
            MediaItem.objects.filter(
                status=MediaItem.Status.POSTED,
                posted_at__isnull=False,
                posted_at__lt=cutoff,
                is_active_version=True,
            ).order_by("posted_at")
        )

    def has_feedback_since(self, item: MediaItem, since: datetime) -> bool:
        return (
            Comment.objects.filter(media_id=item.pk, created_at__gt=since).exists()
            or Review.objects.filter(media_id=item.pk, created_at__gt=since).exists()
        )

    def delete_item(self, item: MediaItem):
        # Comments and reviews cascade; VideoStatusEvent rows are left alone.
        item.delete()
