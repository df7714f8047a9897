from datetime import timedelta
from unittest import mock

import pytest
from django.conf import settings
from django.utils import timezone

from videos import reclaimer, tasks
from videos.models import Comment, MediaItem, Review, VideoStatusEvent
from videos.reclaimer import reclaim_stale_posted_media
from videos.s3 import ObjectStorage, resolve_bucket

pytestmark = pytest.mark.django_db

NOW = timezone.now()


def posted_item(storage, days_ago=10, bucket="media-test", **fields):
    item = MediaItem.objects.create(
        bucket=bucket,
        filename="launch.mp4",
        object_key=fields.pop("object_key", "uploads/abc_launch.mp4"),
        hls_ready=True,
        processing_status="completed",
        **fields,
    )
    item.change_status(MediaItem.Status.POSTED, changed_by="editor")
    MediaItem.objects.filter(pk=item.pk).update(posted_at=NOW - timedelta(days=days_ago))
    item.refresh_from_db()

    physical, prefix = resolve_bucket(bucket)
    item.thumbnail_key = f"thumbnails/{item.id}.jpg"
    item.hls_master_key = f"hls/{item.id}/master.m3u8"
    item.save(update_fields=["thumbnail_key", "hls_master_key"])
    for key in (
        item.object_key,
        item.thumbnail_key,
        item.hls_master_key,
        f"hls/{item.id}/360p/playlist.m3u8",
        f"hls/{item.id}/360p/segment_000.ts",
    ):
        storage.seed(physical, prefix + key)
    return item


def sweep(storage, **kwargs):
    return reclaim_stale_posted_media(NOW, storage=storage, grace_days=5, **kwargs)


def test_stale_item_without_feedback_is_reclaimed(fake_storage):
    item = posted_item(fake_storage)
    fake_storage.seed("media-test", "hls/someone-else/master.m3u8")

    assert sweep(fake_storage) == 1

    assert not MediaItem.objects.filter(pk=item.pk).exists()
    assert fake_storage.keys("media-test") == ["hls/someone-else/master.m3u8"]
    events = VideoStatusEvent.objects.filter(media_id=item.id)
    assert [e.status_changed_to for e in events] == ["Posted"]


def test_item_with_a_recent_comment_is_kept(fake_storage):
    item = posted_item(fake_storage)
    Comment.objects.create(media=item, author="client", body="Can we trim the intro?",
                           created_at=NOW - timedelta(days=1))

    assert sweep(fake_storage) == 0

    assert MediaItem.objects.filter(pk=item.pk).exists()
    assert "uploads/abc_launch.mp4" in fake_storage.keys("media-test")


def test_item_with_a_review_after_posting_is_kept(fake_storage):
    item = posted_item(fake_storage)
    Review.objects.create(media=item, reviewer="lead", notes="Looks good",
                          created_at=NOW - timedelta(days=8))

    assert sweep(fake_storage) == 0
    assert MediaItem.objects.filter(pk=item.pk).exists()


def test_feedback_from_before_posting_does_not_count(fake_storage):
    item = posted_item(fake_storage)
    Comment.objects.create(media=item, body="first pass notes", created_at=NOW - timedelta(days=20))
    Review.objects.create(media=item, notes="approved", created_at=NOW - timedelta(days=11))

    assert sweep(fake_storage) == 1
    assert not MediaItem.objects.filter(pk=item.pk).exists()
    assert not Comment.objects.filter(media_id=item.pk).exists()


def test_item_inside_the_grace_period_is_kept(fake_storage):
    item = posted_item(fake_storage, days_ago=4)

    assert sweep(fake_storage) == 0
    assert MediaItem.objects.filter(pk=item.pk).exists()


def test_only_active_posted_versions_qualify(fake_storage):
    inactive = posted_item(fake_storage, is_active_version=False)
    approved = MediaItem.objects.create(bucket="media-test", filename="cut.mp4", object_key="uploads/x_cut.mp4",
                                        status=MediaItem.Status.APPROVED)
    MediaItem.objects.filter(pk=approved.pk).update(uploaded_at=NOW - timedelta(days=30))

    assert sweep(fake_storage) == 0
    assert MediaItem.objects.filter(pk__in=[inactive.pk, approved.pk]).count() == 2


def test_storage_failure_keeps_the_row_and_continues(fake_storage):
    broken = posted_item(fake_storage, object_key="uploads/aaa_broken.mp4")
    fine = posted_item(fake_storage, object_key="uploads/bbb_fine.mp4")
    fake_storage.fail_delete_for.add("uploads/aaa_broken.mp4")

    assert sweep(fake_storage) == 1

    assert MediaItem.objects.filter(pk=broken.pk).exists()
    assert not MediaItem.objects.filter(pk=fine.pk).exists()
    assert "uploads/aaa_broken.mp4" in fake_storage.keys("media-test")

    fake_storage.fail_delete_for.clear()
    assert sweep(fake_storage) == 1
    assert not MediaItem.objects.exists()


def test_refused_object_delete_keeps_the_row(fake_storage):
    item = posted_item(fake_storage)
    client = mock.Mock()
    client.get_paginator.return_value.paginate.return_value = []
    client.delete_objects.return_value = {
        "Errors": [{"Key": "uploads/abc_launch.mp4", "Code": "AccessDenied", "Message": "denied"}],
    }

    assert sweep(ObjectStorage(client)) == 0

    assert MediaItem.objects.filter(pk=item.pk).exists()
    client.delete_objects.assert_called_once()


def test_workspace_items_are_removed_under_their_prefix(fake_storage):
    item = posted_item(fake_storage, bucket="acme")
    fake_storage.seed("media-test", "uploads/abc_launch.mp4")

    assert sweep(fake_storage) == 1

    assert not MediaItem.objects.filter(pk=item.pk).exists()
    assert fake_storage.keys("media-test") == ["uploads/abc_launch.mp4"]


def test_grace_period_defaults_to_settings(fake_storage, settings):
    settings.RECLAIM_GRACE_DAYS = 30
    posted_item(fake_storage, days_ago=10)

    assert reclaim_stale_posted_media(NOW, storage=fake_storage) == 0


def test_periodic_task_runs_a_sweep(monkeypatch):
    calls = []
    monkeypatch.setattr(reclaimer, "reclaim_stale_posted_media", lambda: calls.append(1) or 3)

    assert tasks.reclaim_stale_posted_media() == 3
    assert calls == [1]


def test_sweep_is_on_the_beat_schedule():
    entry = settings.CELERY_BEAT_SCHEDULE["reclaim-stale-posted-media"]

    assert entry["task"] == "videos.tasks.reclaim_stale_posted_media"
    assert entry["schedule"] == timedelta(hours=settings.RECLAIM_INTERVAL_HOURS)
