from django.urls import path
from .views import (
    CreateMediaFromKeyView,
    MediaDetailView,
    MediaProcessingView,
    MediaStatusView,
    PresignUploadView,
    UploadMediaView,
)

urlpatterns = [
    path("media/upload/", UploadMediaView.as_view(), name="media_upload"),
    path("media/from-key/", CreateMediaFromKeyView.as_view(), name="media_from_key"),
    path("media/<uuid:media_id>/", MediaDetailView.as_view(), name="media_detail"),
    path("media/<uuid:media_id>/processing/", MediaProcessingView.as_view(), name="media_processing"),
    path("media/<uuid:media_id>/status/", MediaStatusView.as_view(), name="media_status"),
    path("uploads/presign/", PresignUploadView.as_view(), name="uploads_presign"),
]
