import mimetypes
import os
import re
from pathlib import Path
from uuid import uuid4

from django.conf import settings

_UNSAFE_FILENAME_CHARS = re.compile(r"[^a-zA-Z0-9._-]")


def sanitize_filename(name: str) -> str:
    """Basename with anything outside [a-zA-Z0-9._-] replaced by underscores."""
    cleaned = _UNSAFE_FILENAME_CHARS.sub("_", os.path.basename(name or ""))
    return cleaned or "upload"


def upload_key(filename: str) -> str:
    """Storage key for a new original: uploads/<uuid>_<safe name>."""
    return f"uploads/{uuid4().hex}_{sanitize_filename(filename)}"


def save_uploaded_file(djangofile) -> Path:
    """Save to MEDIA_ROOT/uploads/<uuid>_<name> and return the absolute path."""
    uploads_dir = Path(settings.MEDIA_ROOT) / "uploads"
    uploads_dir.mkdir(parents=True, exist_ok=True)
    dest = uploads_dir / f"{uuid4().hex}_{sanitize_filename(djangofile.name)}"
    with open(dest, "wb") as f:
        for chunk in djangofile.chunks():
            f.write(chunk)
    return dest


def guess_kind(path: str) -> str:
    """Return 'image' | 'video' | 'other' based on mimetype/extension."""
    mime, _ = mimetypes.guess_type(path)
    if not mime:
        return "other"
    if mime.startswith("image/"):
        return "image"
    if mime.startswith("video/"):
        return "video"
    return "other"
