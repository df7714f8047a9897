from django.contrib import admin

from .models import Comment, MediaItem, Review, VideoStatusEvent


@admin.register(MediaItem)
class MediaItemAdmin(admin.ModelAdmin):
    list_display = ("id", "filename", "bucket", "status", "processing_status", "processing_progress", "hls_ready")
    list_filter = ("status", "processing_status", "hls_ready")
    search_fields = ("filename", "object_key")


admin.site.register(VideoStatusEvent)
admin.site.register(Comment)
admin.site.register(Review)
