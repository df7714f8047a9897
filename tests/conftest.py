import threading
import time
from pathlib import Path

import pytest
from botocore.exceptions import ClientError

from videos.jobs import HlsPackage
from videos.s3 import resolve_bucket
from videos.store import failure_step


def client_error(code="SlowDown", operation="PutObject"):
    return ClientError({"Error": {"Code": code, "Message": f"{code} from test"}}, operation)


class FakeStorage:
    """In-memory stand-in for ObjectStorage, keyed by (physical bucket, full key)."""

    def __init__(self):
        self.objects = {}
        self.put_order = []
        self.fail_delete_for = set()

    def seed(self, bucket, key, data=b"x"):
        self.objects[(bucket, key)] = data

    def keys(self, bucket):
        return sorted(k for b, k in self.objects if b == bucket)

    def put_object(self, bucket_ref, key, body, content_type=None):
        bucket, prefix = resolve_bucket(bucket_ref)
        full_key = f"{prefix}{key}"
        data = body.read() if hasattr(body, "read") else body
        self.objects[(bucket, full_key)] = data
        self.put_order.append((full_key, content_type))
        return full_key

    def download(self, bucket_ref, key, dest, callback=None):
        bucket, prefix = resolve_bucket(bucket_ref)
        try:
            data = self.objects[(bucket, f"{prefix}{key}")]
        except KeyError:
            raise client_error("NoSuchKey", "GetObject")
        dest = Path(dest)
        dest.write_bytes(data)
        if callback is not None:
            callback(len(data))
        return dest

    def list_keys(self, bucket, prefix):
        return [k for b, k in sorted(self.objects) if b == bucket and k.startswith(prefix)]

    def delete_keys(self, bucket, keys):
        keys = list(keys)
        if self.fail_delete_for.intersection(keys):
            raise client_error("InternalError", "DeleteObjects")
        for key in keys:
            self.objects.pop((bucket, key), None)
        return len(keys)


class SlowDownloadStorage(FakeStorage):
    """Delivers the object in small chunks, reporting each to the transfer callback."""

    def __init__(self, chunks=100, chunk_delay=0.02):
        super().__init__()
        self.chunks = chunks
        self.chunk_delay = chunk_delay

    def download(self, bucket_ref, key, dest, callback=None):
        for _ in range(self.chunks):
            time.sleep(self.chunk_delay)
            if callback is not None:
                callback(1024)
        return super().download(bucket_ref, key, dest)


class InMemoryStore:
    """Metadata store double for tests that run the worker thread."""

    def __init__(self):
        self.rows = {}
        self.lock = threading.Lock()

    def _set(self, media_id, **fields):
        with self.lock:
            row = self.rows.setdefault(str(media_id), {
                "processing_status": None,
                "processing_progress": 0,
                "processing_step": None,
                "hls_ready": False,
            })
            row.update(fields)

    def mark_queued(self, media_id):
        self._set(media_id, processing_status="queued", processing_progress=0, processing_step=None)

    def mark_processing(self, media_id):
        self._set(media_id, processing_status="processing", processing_progress=0, processing_step="downloading")

    def report_progress(self, media_id, step, progress):
        self._set(media_id, processing_status="processing", processing_progress=progress, processing_step=step)

    def mark_completed(self, media_id, package):
        self._set(media_id, processing_status="completed", processing_progress=100, processing_step=None,
                  hls_ready=True, hls_master_key=package.master_key)

    def mark_failed(self, media_id, message):
        self._set(media_id, processing_status="failed", processing_progress=0,
                  processing_step=failure_step(message))

    def processing_fields(self, media_id):
        with self.lock:
            row = self.rows.get(str(media_id))
            if row is None:
                return None
            return {k: row[k] for k in ("processing_status", "processing_progress", "processing_step", "hls_ready")}

    def stuck_items(self):
        return []

    def processing_count(self):
        with self.lock:
            return sum(1 for r in self.rows.values() if r["processing_status"] == "processing")


class FakeTranscoder:
    """Records jobs in call order; failures maps media id -> exception to raise."""

    def __init__(self, failures=None, during=None):
        self.failures = failures or {}
        self.during = during
        self.jobs = []

    def transcode(self, job, on_progress, deadline=None):
        self.jobs.append(job)
        if self.during is not None:
            self.during(job)
        on_progress("360p", 50)
        exc = self.failures.get(job.media_id)
        if exc is not None:
            raise exc
        return HlsPackage(
            master_key=f"hls/{job.media_id}/master.m3u8",
            thumbnail_key=f"thumbnails/{job.media_id}.jpg",
            renditions=("360p",),
        )


@pytest.fixture(autouse=True)
def storage_settings(settings, tmp_path):
    settings.S3_BUCKET = "media-test"
    settings.STORAGE_BUCKETS = ["media-test"]
    settings.MEDIA_ROOT = tmp_path / "media"
    settings.UPLOAD_BASE_DELAY_SECONDS = 0
    return settings


@pytest.fixture
def fake_storage():
    return FakeStorage()


@pytest.fixture
def memory_store():
    return InMemoryStore()
