from rest_framework import serializers

from .models import MediaItem
from .uploads import InvalidObjectKey, validate_key


class MediaItemSerializer(serializers.ModelSerializer):
    class Meta:
        model = MediaItem
        fields = [
            "id",
            "bucket",
            "filename",
            "object_key",
            "size",
            "status",
            "posted_at",
            "processing_status",
            "processing_progress",
            "processing_step",
            "hls_ready",
            "hls_master_key",
            "thumbnail_key",
            "uploaded_at",
            "updated_at",
        ]


class ProcessingInfoSerializer(serializers.Serializer):
    processing_status = serializers.CharField(allow_null=True)
    processing_progress = serializers.IntegerField()
    processing_step = serializers.CharField(allow_null=True)
    hls_ready = serializers.BooleanField()
    queue_position = serializers.IntegerField()
    queue_total = serializers.IntegerField()


class UploadCreateSerializer(serializers.Serializer):
    file = serializers.FileField()
    bucket = serializers.CharField(max_length=128)
    uploaded_by = serializers.CharField(max_length=128, required=False, allow_blank=True)


class PresignRequestSerializer(serializers.Serializer):
    filename = serializers.CharField()
    bucket = serializers.CharField(max_length=128)
    content_type = serializers.CharField(required=False, allow_blank=True)


class PresignResponseSerializer(serializers.Serializer):
    key = serializers.CharField()
    url = serializers.URLField()
    headers = serializers.DictField(child=serializers.CharField(), required=False)


class MediaFromKeyRequestSerializer(serializers.Serializer):
    key = serializers.CharField()
    bucket = serializers.CharField(max_length=128)
    filename = serializers.CharField(max_length=255, required=False, allow_blank=True)
    size = serializers.IntegerField(required=False, min_value=0)
    uploaded_by = serializers.CharField(max_length=128, required=False, allow_blank=True)

    def validate_key(self, value):
        try:
            return validate_key(value)
        except InvalidObjectKey as e:
            raise serializers.ValidationError(str(e))


class StatusChangeSerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=MediaItem.Status.choices)
    changed_by = serializers.CharField(max_length=128, required=False, allow_blank=True)
