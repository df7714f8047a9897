import logging

from botocore.exceptions import BotoCoreError, ClientError
from django.shortcuts import get_object_or_404
from rest_framework import status, views
from rest_framework.permissions import AllowAny
from rest_framework.response import Response

from .jobs import LocalSource, RemoteSource
from .models import MediaItem
from .queue import get_queue
from .reclaimer import delete_media_objects
from .s3 import ObjectStorage, PartialDeleteError, create_presigned_get, create_presigned_put
from .serializers import (
    MediaFromKeyRequestSerializer,
    MediaItemSerializer,
    PresignRequestSerializer,
    PresignResponseSerializer,
    ProcessingInfoSerializer,
    StatusChangeSerializer,
    UploadCreateSerializer,
)
from .uploads import RetryingUploader
from .utils import guess_kind, sanitize_filename, save_uploaded_file, upload_key

logger = logging.getLogger(__name__)


class UploadMediaView(views.APIView):
    """
    Accepts a file upload through Django, stores the original in object
    storage, creates the MediaItem and queues it for HLS transcoding from the
    local copy.
    """
    permission_classes = [AllowAny]
    authentication_classes = []

    def post(self, request):
        ser = UploadCreateSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        upload = ser.validated_data["file"]
        bucket = ser.validated_data["bucket"]

        if guess_kind(upload.name) != "video":
            return Response({"detail": "Only video files can be uploaded."}, status=400)

        local_path = save_uploaded_file(upload)
        key = upload_key(upload.name)
        try:
            with open(local_path, "rb") as fh:
                RetryingUploader().upload(bucket, key, fh, upload.content_type or None)
        except (BotoCoreError, ClientError):
            logger.exception("Storing original %s failed", upload.name)
            local_path.unlink(missing_ok=True)
            return Response({"detail": "Failed to store the upload."}, status=502)

        item = MediaItem.objects.create(
            bucket=bucket,
            filename=sanitize_filename(upload.name),
            object_key=key,
            size=upload.size,
            uploaded_by=ser.validated_data.get("uploaded_by", ""),
        )
        get_queue().enqueue(item.id, LocalSource(local_path, temporary=True), bucket, item.filename)
        return Response({"media_id": str(item.id)}, status=status.HTTP_202_ACCEPTED)


class PresignUploadView(views.APIView):
    """
    Returns a presigned PUT URL + recommended key so the client can upload
    directly to object storage without streaming through Django.
    """
    permission_classes = [AllowAny]
    authentication_classes = []

    def post(self, request):
        ser = PresignRequestSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        key = upload_key(ser.validated_data["filename"])
        signed = create_presigned_put(
            ser.validated_data["bucket"], key, content_type=ser.validated_data.get("content_type") or None
        )
        resp = {"key": key, "url": signed["url"], "headers": signed.get("headers", {})}
        return Response(PresignResponseSerializer(resp).data, status=201)


class CreateMediaFromKeyView(views.APIView):
    """Creates a MediaItem for an object already uploaded by key and queues it."""
    permission_classes = [AllowAny]
    authentication_classes = []

    def post(self, request):
        ser = MediaFromKeyRequestSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        key = ser.validated_data["key"]
        bucket = ser.validated_data["bucket"]
        filename = sanitize_filename(ser.validated_data.get("filename") or key)

        if guess_kind(key) != "video":
            return Response({"detail": "Unsupported file type."}, status=400)

        item = MediaItem.objects.create(
            bucket=bucket,
            filename=filename,
            object_key=key,
            size=ser.validated_data.get("size"),
            uploaded_by=ser.validated_data.get("uploaded_by", ""),
        )
        get_queue().enqueue(item.id, RemoteSource(key), bucket, filename)
        return Response({"media_id": str(item.id)}, status=status.HTTP_202_ACCEPTED)


class MediaProcessingView(views.APIView):
    permission_classes = [AllowAny]
    authentication_classes = []

    def get(self, request, media_id):
        info = get_queue().get_processing_info(media_id)
        if info is None:
            return Response({"detail": "Not found"}, status=404)
        return Response(ProcessingInfoSerializer(info).data)


class MediaDetailView(views.APIView):
    permission_classes = [AllowAny]
    authentication_classes = []

    def get(self, request, media_id):
        item = get_object_or_404(MediaItem, pk=media_id)
        data = MediaItemSerializer(item).data
        data["playback_url"] = create_presigned_get(item.bucket, item.hls_master_key) if item.hls_ready else None
        data["thumbnail_url"] = create_presigned_get(item.bucket, item.thumbnail_key) if item.thumbnail_key else None
        return Response(data)

    def delete(self, request, media_id):
        item = get_object_or_404(MediaItem, pk=media_id)
        queue = get_queue()
        if not queue.dequeue(item.id) and queue.is_processing(item.id):
            return Response({"detail": "Media is being processed; try again when it finishes."}, status=409)

        try:
            delete_media_objects(ObjectStorage(), item)
        except (BotoCoreError, ClientError, PartialDeleteError):
            logger.exception("Failed to delete storage objects for %s", item.id)
            return Response({"detail": "Failed to delete stored files."}, status=502)
        item.delete()
        return Response(status=204)


class MediaStatusView(views.APIView):
    permission_classes = [AllowAny]
    authentication_classes = []

    def patch(self, request, media_id):
        item = get_object_or_404(MediaItem, pk=media_id)
        ser = StatusChangeSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        item.change_status(ser.validated_data["status"], ser.validated_data.get("changed_by", ""))
        return Response(MediaItemSerializer(item).data)
