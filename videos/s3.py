import logging
import os
from pathlib import Path
from typing import Iterable, Iterator

import boto3
from botocore.config import Config as BotoConfig
from django.conf import settings

logger = logging.getLogger(__name__)

# S3 DeleteObjects accepts at most 1000 keys per request.
DELETE_BATCH_SIZE = 1000


class PartialDeleteError(RuntimeError):
    """DeleteObjects refused some keys; they are still in the bucket."""

    def __init__(self, bucket: str, keys: list[str]):
        super().__init__(f"{len(keys)} object(s) in {bucket} could not be deleted")
        self.bucket = bucket
        self.keys = keys


def get_s3_client():
    """
    SDK client for server-side upload/download.
    """
    session = boto3.session.Session(
        aws_access_key_id=settings.S3_ACCESS_KEY,
        aws_secret_access_key=settings.S3_SECRET_KEY,
        region_name=settings.S3_REGION,
    )
    return session.client(
        "s3",
        endpoint_url=settings.S3_ENDPOINT_URL,  # e.g. http://127.0.0.1:9000
        config=BotoConfig(
            s3={"addressing_style": "path"},
            signature_version="s3v4",
        ),
    )


def get_presign_client():
    """
    Separate client for generating presigned URLs that the browser will call.
    Uses S3_PUBLIC_ENDPOINT so the URL host matches what the client reaches.
    """
    public_endpoint = os.getenv("S3_PUBLIC_ENDPOINT", settings.S3_ENDPOINT_URL)
    session = boto3.session.Session(
        aws_access_key_id=settings.S3_ACCESS_KEY,
        aws_secret_access_key=settings.S3_SECRET_KEY,
        region_name=settings.S3_REGION,
    )
    return session.client(
        "s3",
        endpoint_url=public_endpoint,
        config=BotoConfig(
            s3={"addressing_style": "path"},
            signature_version="s3v4",
        ),
    )


def resolve_bucket(bucket_ref: str | None) -> tuple[str, str]:
    """
    Map a logical bucket ref to (physical bucket, key prefix).

    A ref naming one of STORAGE_BUCKETS is used as-is; anything else is a
    workspace slug living under workspaces/<slug>/ in the main bucket.
    """
    if not bucket_ref:
        return settings.S3_BUCKET, ""
    if bucket_ref in settings.STORAGE_BUCKETS:
        return bucket_ref, ""
    return settings.S3_BUCKET, f"workspaces/{bucket_ref}/"


def create_presigned_put(bucket_ref: str, key: str, content_type: str | None = None, expires: int | None = None) -> dict:
    """
    Create a presigned PUT URL to upload a single object directly to S3/MinIO.

    ContentType is deliberately left out of the signed params so clients that
    omit or alter the header still match the signature.
    """
    bucket, prefix = resolve_bucket(bucket_ref)
    s3 = get_presign_client()
    url = s3.generate_presigned_url(
        ClientMethod="put_object",
        Params={"Bucket": bucket, "Key": f"{prefix}{key}"},
        ExpiresIn=expires or settings.S3_PRESIGN_EXPIRE_SECONDS,
        HttpMethod="PUT",
    )
    headers = {"Content-Type": content_type} if content_type else {}
    return {"url": url, "headers": headers}


def create_presigned_get(bucket_ref: str, key: str, expires: int | None = None) -> str:
    bucket, prefix = resolve_bucket(bucket_ref)
    s3 = get_presign_client()
    return s3.generate_presigned_url(
        ClientMethod="get_object",
        Params={"Bucket": bucket, "Key": f"{prefix}{key}"},
        ExpiresIn=expires or settings.S3_PRESIGN_EXPIRE_SECONDS,
        HttpMethod="GET",
    )


class ObjectStorage:
    """
    Thin wrapper over the boto3 client. Keys passed to put_object/download are
    relative to the bucket ref's prefix; list_keys/delete_keys work on
    physical bucket names and full keys.
    """

    def __init__(self, client=None):
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = get_s3_client()
        return self._client

    def put_object(self, bucket_ref: str, key: str, body, content_type: str | None = None) -> str:
        bucket, prefix = resolve_bucket(bucket_ref)
        full_key = f"{prefix}{key}"
        extra = {"ContentType": content_type} if content_type else {}
        self.client.put_object(Bucket=bucket, Key=full_key, Body=body, **extra)
        return full_key

    def download(self, bucket_ref: str, key: str, dest: Path, callback=None) -> Path:
        """
        Fetch an object to dest. callback(bytes_transferred) runs as chunks
        arrive; an exception it raises aborts the transfer and propagates.
        """
        bucket, prefix = resolve_bucket(bucket_ref)
        dest = Path(dest)
        dest.parent.mkdir(parents=True, exist_ok=True)
        extra = {"Callback": callback} if callback is not None else {}
        self.client.download_file(bucket, f"{prefix}{key}", str(dest), **extra)
        return dest

    def list_keys(self, bucket: str, prefix: str) -> Iterator[str]:
        paginator = self.client.get_paginator("list_objects_v2")
        for page in paginator.paginate(Bucket=bucket, Prefix=prefix):
            for obj in page.get("Contents", []):
                yield obj["Key"]

    def delete_keys(self, bucket: str, keys: Iterable[str]) -> int:
        """
        Delete keys in DeleteObjects-sized batches and return how many were
        removed. Every batch is attempted; if any key was refused,
        PartialDeleteError is raised afterwards listing them.
        """
        keys = list(keys)
        failed = []
        for start in range(0, len(keys), DELETE_BATCH_SIZE):
            batch = keys[start:start + DELETE_BATCH_SIZE]
            resp = self.client.delete_objects(
                Bucket=bucket,
                Delete={"Objects": [{"Key": k} for k in batch], "Quiet": True},
            )
            for err in resp.get("Errors", []):
                logger.warning(
                    "Could not delete s3://%s/%s: %s %s",
                    bucket, err.get("Key"), err.get("Code"), err.get("Message"),
                )
                failed.append(err.get("Key"))
        if failed:
            raise PartialDeleteError(bucket, failed)
        return len(keys)
