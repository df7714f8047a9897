import logging
import time

from botocore.exceptions import BotoCoreError, ClientError
from django.conf import settings

from .s3 import ObjectStorage

logger = logging.getLogger(__name__)

MAX_KEY_LENGTH = 1024


class InvalidObjectKey(ValueError):
    """The key can never be stored; retrying would not help."""


def validate_key(key) -> str:
    if not isinstance(key, str) or not key.strip():
        raise InvalidObjectKey("object key must be a non-empty string")
    if len(key.encode("utf-8")) > MAX_KEY_LENGTH:
        raise InvalidObjectKey(f"object key longer than {MAX_KEY_LENGTH} bytes")
    if key.startswith("/") or ".." in key.split("/"):
        raise InvalidObjectKey(f"object key {key!r} is not a relative path")
    if any(ord(ch) < 32 for ch in key):
        raise InvalidObjectKey(f"object key {key!r} contains control characters")
    return key


class RetryingUploader:
    """
    Puts one object, retrying storage failures with exponential backoff.

    Only errors raised by the put itself (botocore client/transport errors)
    are retried. When every attempt fails the last error is re-raised as-is.
    """

    def __init__(self, storage: ObjectStorage | None = None, *, max_retries: int | None = None,
                 base_delay: float | None = None, sleep=time.sleep):
        self.storage = storage or ObjectStorage()
        self.max_retries = settings.UPLOAD_MAX_RETRIES if max_retries is None else max_retries
        self.base_delay = settings.UPLOAD_BASE_DELAY_SECONDS if base_delay is None else base_delay
        self.sleep = sleep

    def backoff(self, attempt: int) -> float:
        return self.base_delay * 2 ** (attempt - 1)

    def upload(self, bucket_ref: str, key: str, body, content_type: str | None = None) -> str:
        validate_key(key)
        attempts = self.max_retries + 1
        for attempt in range(1, attempts + 1):
            if hasattr(body, "seek"):
                body.seek(0)
            try:
                return self.storage.put_object(bucket_ref, key, body, content_type)
            except (BotoCoreError, ClientError) as exc:
                if attempt >= attempts:
                    logger.error("Upload of %s failed after %d attempts: %s", key, attempts, exc)
                    raise
                delay = self.backoff(attempt)
                logger.warning(
                    "Upload of %s failed (attempt %d/%d), retrying in %.1fs: %s",
                    key, attempt, attempts, delay, exc,
                )
                self.sleep(delay)
