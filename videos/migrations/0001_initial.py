import uuid

import django.db.models.deletion
import django.utils.timezone
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="MediaItem",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("bucket", models.CharField(max_length=128)),
                ("filename", models.CharField(max_length=255)),
                ("object_key", models.CharField(max_length=1024)),
                ("size", models.BigIntegerField(blank=True, null=True)),
                ("uploaded_by", models.CharField(blank=True, default="", max_length=128)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("Draft", "Draft"),
                            ("Pending", "Pending"),
                            ("Under Review", "Under Review"),
                            ("Approved", "Approved"),
                            ("Changes Needed", "Changes Needed"),
                            ("Rejected", "Rejected"),
                            ("Posted", "Posted"),
                        ],
                        default="Draft",
                        max_length=32,
                    ),
                ),
                ("is_active_version", models.BooleanField(default=True)),
                ("posted_at", models.DateTimeField(blank=True, null=True)),
                (
                    "processing_status",
                    models.CharField(
                        blank=True,
                        choices=[
                            ("queued", "Queued"),
                            ("processing", "Processing"),
                            ("completed", "Completed"),
                            ("failed", "Failed"),
                        ],
                        default=None,
                        max_length=16,
                        null=True,
                    ),
                ),
                ("processing_progress", models.PositiveSmallIntegerField(default=0)),
                ("processing_step", models.TextField(blank=True, null=True)),
                ("hls_ready", models.BooleanField(default=False)),
                ("hls_master_key", models.CharField(blank=True, max_length=1024, null=True)),
                ("thumbnail_key", models.CharField(blank=True, max_length=1024, null=True)),
                ("uploaded_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "ordering": ["-uploaded_at"],
                "indexes": [
                    models.Index(fields=["processing_status"], name="media_processing_idx"),
                    models.Index(fields=["status", "posted_at"], name="media_posted_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="VideoStatusEvent",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("bucket", models.CharField(db_index=True, max_length=128)),
                ("media_id", models.UUIDField(db_index=True)),
                ("filename", models.CharField(max_length=255)),
                ("status_changed_to", models.CharField(db_index=True, max_length=32)),
                ("changed_at", models.DateTimeField(db_index=True, default=django.utils.timezone.now)),
                ("changed_by", models.CharField(blank=True, default="", max_length=128)),
            ],
            options={
                "ordering": ["-changed_at"],
            },
        ),
        migrations.CreateModel(
            name="Comment",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("author", models.CharField(blank=True, default="", max_length=128)),
                ("body", models.TextField()),
                ("timestamp_seconds", models.FloatField(blank=True, null=True)),
                ("created_at", models.DateTimeField(default=django.utils.timezone.now)),
                (
                    "media",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="comments",
                        to="videos.mediaitem",
                    ),
                ),
            ],
        ),
        migrations.CreateModel(
            name="Review",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("reviewer", models.CharField(blank=True, default="", max_length=128)),
                ("notes", models.TextField(blank=True, default="")),
                ("created_at", models.DateTimeField(default=django.utils.timezone.now)),
                (
                    "media",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="reviews",
                        to="videos.mediaitem",
                    ),
                ),
            ],
        ),
    ]
