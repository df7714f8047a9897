import uuid
from django.db import models
from django.utils import timezone


class MediaItem(models.Model):
    class Status(models.TextChoices):
        DRAFT = "Draft"
        PENDING = "Pending"
        UNDER_REVIEW = "Under Review"
        APPROVED = "Approved"
        CHANGES_NEEDED = "Changes Needed"
        REJECTED = "Rejected"
        POSTED = "Posted"

    class ProcessingStatus(models.TextChoices):
        QUEUED = "queued"
        PROCESSING = "processing"
        COMPLETED = "completed"
        FAILED = "failed"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    bucket = models.CharField(max_length=128)          # physical bucket or workspace slug
    filename = models.CharField(max_length=255)
    object_key = models.CharField(max_length=1024)     # original upload, relative to the bucket prefix
    size = models.BigIntegerField(null=True, blank=True)
    uploaded_by = models.CharField(max_length=128, blank=True, default="")

    # Review workflow; owned by the approval flow, read by the reclaimer.
    status = models.CharField(max_length=32, choices=Status.choices, default=Status.DRAFT)
    is_active_version = models.BooleanField(default=True)
    posted_at = models.DateTimeField(null=True, blank=True)

    # Written only by the transcode queue.
    processing_status = models.CharField(
        max_length=16, choices=ProcessingStatus.choices, null=True, blank=True, default=None
    )
    processing_progress = models.PositiveSmallIntegerField(default=0)  # 0..100
    processing_step = models.TextField(null=True, blank=True)
    hls_ready = models.BooleanField(default=False)
    hls_master_key = models.CharField(max_length=1024, null=True, blank=True)
    thumbnail_key = models.CharField(max_length=1024, null=True, blank=True)

    uploaded_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-uploaded_at"]
        indexes = [
            models.Index(fields=["processing_status"], name="media_processing_idx"),
            models.Index(fields=["status", "posted_at"], name="media_posted_idx"),
        ]

    def __str__(self) -> str:
        return f"MediaItem<{self.id} {self.filename}>"

    def change_status(self, status: str, changed_by: str = "") -> "MediaItem":
        """
        Move the item through the review workflow. Becoming Posted stamps
        posted_at; every change is appended to VideoStatusEvent, which keeps
        historical counts after the item itself is gone.
        """
        self.status = status
        update_fields = ["status", "updated_at"]
        if status == self.Status.POSTED:
            self.posted_at = timezone.now()
            update_fields.append("posted_at")
        self.save(update_fields=update_fields)

        VideoStatusEvent.objects.create(
            bucket=self.bucket,
            media_id=self.id,
            filename=self.filename,
            status_changed_to=status,
            changed_by=changed_by or "",
        )
        return self


class VideoStatusEvent(models.Model):
    # No foreign key: rows must outlive the MediaItem they describe.
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    bucket = models.CharField(max_length=128, db_index=True)
    media_id = models.UUIDField(db_index=True)
    filename = models.CharField(max_length=255)
    status_changed_to = models.CharField(max_length=32, db_index=True)
    changed_at = models.DateTimeField(default=timezone.now, db_index=True)
    changed_by = models.CharField(max_length=128, blank=True, default="")

    class Meta:
        ordering = ["-changed_at"]


class Comment(models.Model):
    media = models.ForeignKey(MediaItem, on_delete=models.CASCADE, related_name="comments")
    author = models.CharField(max_length=128, blank=True, default="")
    body = models.TextField()
    timestamp_seconds = models.FloatField(null=True, blank=True)
    created_at = models.DateTimeField(default=timezone.now)


class Review(models.Model):
    media = models.ForeignKey(MediaItem, on_delete=models.CASCADE, related_name="reviews")
    reviewer = models.CharField(max_length=128, blank=True, default="")
    notes = models.TextField(blank=True, default="")
    created_at = models.DateTimeField(default=timezone.now)
