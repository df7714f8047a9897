"""
In-process transcode queue.

One worker thread runs jobs strictly one at a time, in enqueue order. The
thread is supervised: a crash inside the loop marks the in-flight job failed,
resets the queue state and restarts the loop after a short delay.

Recovery: call bootstrap_queue() once the database is reachable to re-enqueue
anything a previous process left queued or half-processed.
"""
import logging
import threading
import time
from collections import deque
from functools import partial

from django.conf import settings
from django.db import DatabaseError, close_old_connections

from .jobs import JobResult, QueueJob, RemoteSource, SourceLocator
from .store import MediaStore
from .transcoder import HlsTranscoder, JobTimeout
from .utils import sanitize_filename

logger = logging.getLogger(__name__)


class WorkerCrash(RuntimeError):
    """Unexpected error inside the worker loop, tagged with the job that was in flight."""

    def __init__(self, job: QueueJob | None, error: BaseException):
        super().__init__(f"worker crashed on {job.media_id if job else 'no job'}: {error}")
        self.job = job
        self.error = error


def describe_failure(exc: BaseException) -> str:
    return str(exc) or exc.__class__.__name__


def format_duration(seconds: float) -> str:
    """Whole minutes when the budget divides evenly, seconds otherwise."""
    if seconds >= 60 and seconds % 60 == 0:
        minutes = int(seconds // 60)
        return f"{minutes} minute" + ("" if minutes == 1 else "s")
    return f"{seconds:g} second" + ("" if seconds == 1 else "s")


class TranscodeQueue:
    def __init__(self, transcoder=None, store=None, *, timeout: float | None = None,
                 yield_delay: float | None = None, reset_delay: float | None = None, autostart: bool = True):
        self.transcoder = transcoder or HlsTranscoder()
        self.store = store or MediaStore()
        self.timeout = settings.TRANSCODE_TIMEOUT_SECONDS if timeout is None else timeout
        self.yield_delay = settings.TRANSCODE_YIELD_SECONDS if yield_delay is None else yield_delay
        self.reset_delay = settings.TRANSCODE_RESET_DELAY_SECONDS if reset_delay is None else reset_delay
        self.autostart = autostart

        self._jobs: deque[QueueJob] = deque()
        self._current: QueueJob | None = None
        self._cond = threading.Condition()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    # ---------------------------------------------------------------
    # Caller-facing operations
    # ---------------------------------------------------------------
    def enqueue(self, media_id, source: SourceLocator, bucket: str, filename: str) -> bool:
        """
        Queue a media item for transcoding. Returns False (and does nothing)
        when the item is already queued or being processed.
        """
        media_id = str(media_id)
        job = QueueJob(media_id=media_id, source=source, bucket=bucket, filename=filename)
        with self._cond:
            if self._current is not None and self._current.media_id == media_id:
                logger.info("Media %s is already being processed, skipping enqueue", media_id)
                job.release()
                return False
            if any(j.media_id == media_id for j in self._jobs):
                logger.info("Media %s is already queued, skipping enqueue", media_id)
                job.release()
                return False

            # Written before the job is visible to the worker.
            self.store.mark_queued(media_id)
            self._jobs.append(job)
            logger.info(
                "Media %s enqueued (%s, bucket=%s, file=%s). Waiting: %d, busy: %s",
                media_id, source, bucket, filename, len(self._jobs), self._current is not None,
            )
            self._cond.notify_all()

        if self.autostart:
            self.start()
        return True

    def dequeue(self, media_id) -> bool:
        """Remove a job that has not started yet. Returns whether one was removed."""
        media_id = str(media_id)
        with self._cond:
            for job in self._jobs:
                if job.media_id == media_id:
                    self._jobs.remove(job)
                    break
            else:
                return False
            self._cond.notify_all()
        job.release()
        logger.info("Media %s dequeued. Waiting: %d", media_id, len(self._jobs))
        return True

    def get_queue_position(self, media_id) -> int:
        """0 while processing, 1..N while waiting, -1 when unknown to the queue."""
        media_id = str(media_id)
        with self._cond:
            if self._current is not None and self._current.media_id == media_id:
                return 0
            for position, job in enumerate(self._jobs, start=1):
                if job.media_id == media_id:
                    return position
        return -1

    def get_queue_total(self) -> int:
        with self._cond:
            return len(self._jobs) + (1 if self._current is not None else 0)

    def is_processing(self, media_id) -> bool:
        return self.get_queue_position(media_id) == 0

    def get_processing_info(self, media_id) -> dict | None:
        fields = self.store.processing_fields(media_id)
        if fields is None:
            return None
        return {
            **fields,
            "queue_position": self.get_queue_position(media_id),
            "queue_total": self.get_queue_total(),
        }

    def recover_stuck_videos(self) -> int:
        """
        Re-enqueue items a previous process left queued or processing.
        Local temp files do not survive a restart, so every job is rebuilt
        from the original's storage key.
        """
        items = self.store.stuck_items()
        if not items:
            logger.info("Recovery: no stuck media found")
            return 0

        logger.info("Recovery: found %d stuck media item(s), re-enqueueing", len(items))
        recovered = 0
        for item in items:
            if not item.object_key:
                logger.error("Recovery: media %s has no stored original, marking failed", item.id)
                self._mark_failed_quietly(item.id, "recovery failed - no stored original, please re-upload")
                continue
            try:
                if self.enqueue(item.id, RemoteSource(item.object_key), item.bucket,
                                sanitize_filename(item.filename)):
                    recovered += 1
            except Exception:
                logger.exception("Recovery: could not re-enqueue media %s", item.id)
                self._mark_failed_quietly(item.id, "recovery failed - please re-upload")

        logger.info("Recovery complete: %d re-enqueued, %d waiting", recovered, self.get_queue_total())
        return recovered

    # ---------------------------------------------------------------
    # Worker lifecycle
    # ---------------------------------------------------------------
    def start(self):
        with self._cond:
            if self._thread is not None and self._thread.is_alive():
                return
            self._stop.clear()
            self._thread = threading.Thread(target=self._supervise, name="transcode-worker", daemon=True)
            self._thread.start()

    def stop(self, timeout: float | None = None):
        """Stop the worker after the current job; queued jobs stay queued."""
        self._stop.set()
        with self._cond:
            self._cond.notify_all()
            thread = self._thread
        if thread is not None:
            thread.join(timeout)

    def wait_until_idle(self, timeout: float | None = None) -> bool:
        with self._cond:
            return self._cond.wait_for(lambda: not self._jobs and self._current is None, timeout)

    def process_next(self, block: bool = False) -> JobResult | None:
        """
        Run the job at the head of the queue. Returns None when there is
        nothing to run. Without block, also None while another job holds the
        worker slot; with block, waits for both a job and a free slot.

        Job failures come back as a failed JobResult; anything unexpected is
        raised as WorkerCrash carrying the job.
        """
        job = self._take_next(block)
        if job is None:
            return None
        try:
            return self._execute(job)
        except Exception as e:
            raise WorkerCrash(job, e) from e
        finally:
            job.release()
            with self._cond:
                self._current = None
                self._cond.notify_all()

    # ---------------------------------------------------------------
    # Internals
    # ---------------------------------------------------------------
    def _take_next(self, block: bool) -> QueueJob | None:
        with self._cond:
            # Wait for both a job and a free slot.
            while self._current is not None or not self._jobs:
                if not block or self._stop.is_set():
                    return None
                self._cond.wait()
            job = self._jobs.popleft()
            self._current = job
            return job

    def _execute(self, job: QueueJob) -> JobResult:
        logger.info("=== Starting media %s (%d waiting) ===", job.media_id, len(self._jobs))
        self.store.mark_processing(job.media_id)
        deadline = time.monotonic() + self.timeout
        try:
            package = self.transcoder.transcode(
                job, partial(self._report_progress, job.media_id), deadline=deadline
            )
            if time.monotonic() > deadline:
                raise JobTimeout("finished after the time budget")
        except Exception as e:
            if isinstance(e, JobTimeout):
                message = f"processing timed out after {format_duration(self.timeout)}"
            else:
                message = describe_failure(e)
            logger.error("=== Media %s FAILED: %s ===", job.media_id, message)
            self.store.mark_failed(job.media_id, message)
            return JobResult(job.media_id, ok=False, error=message)

        self.store.mark_completed(job.media_id, package)
        logger.info("=== Media %s completed (%s) ===", job.media_id, package.master_key)
        return JobResult(job.media_id, ok=True, master_key=package.master_key)

    def _report_progress(self, media_id: str, step: str, progress: int):
        try:
            self.store.report_progress(media_id, step, progress)
        except Exception as e:
            # Progress is advisory; the job keeps going.
            logger.warning("Progress update for %s failed: %s", media_id, e)

    def _mark_failed_quietly(self, media_id, message: str):
        try:
            self.store.mark_failed(media_id, message)
        except Exception:
            logger.exception("Could not mark media %s failed", media_id)

    def _supervise(self):
        logger.info("Transcode worker started")
        while not self._stop.is_set():
            try:
                self._worker_loop()
            except WorkerCrash as crash:
                logger.exception("Transcode worker crashed on media %s", crash.job.media_id)
                self._force_reset(crash.job)
                self._stop.wait(self.reset_delay)
            except Exception:
                logger.exception("Transcode worker crashed")
                self._force_reset(None)
                self._stop.wait(self.reset_delay)
        logger.info("Transcode worker stopped")

    def _worker_loop(self):
        while not self._stop.is_set():
            close_old_connections()
            try:
                result = self.process_next(block=True)
            finally:
                close_old_connections()
            if result is not None:
                self._stop.wait(self.yield_delay)

    def _force_reset(self, job: QueueJob | None):
        with self._cond:
            self._current = None
            remaining = len(self._jobs)
            self._cond.notify_all()
        if job is not None:
            self._mark_failed_quietly(job.media_id, "queue force-reset after crash")
        if remaining:
            logger.warning("Resuming %d queued job(s) in %.0fs", remaining, self.reset_delay)


_queue: TranscodeQueue | None = None
_queue_lock = threading.Lock()


def get_queue() -> TranscodeQueue:
    global _queue
    with _queue_lock:
        if _queue is None:
            _queue = TranscodeQueue()
        return _queue


def bootstrap_queue() -> TranscodeQueue | None:
    """Start the worker and recover stuck items. Called once per web process."""
    if not settings.TRANSCODE_RECOVER_ON_STARTUP:
        return None
    queue = get_queue()
    queue.start()
    try:
        queue.recover_stuck_videos()
    except DatabaseError:
        logger.exception("Recovery of stuck media failed")
    return queue
