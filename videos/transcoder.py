import json
import logging
import subprocess
import tempfile
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from django.conf import settings
from PIL import Image

from .jobs import HlsPackage, LocalSource, QueueJob, RemoteSource
from .s3 import ObjectStorage
from .uploads import RetryingUploader

logger = logging.getLogger(__name__)

DEFAULT_SOURCE_HEIGHT = 1080
THUMBNAIL_SIZE = (640, 360)
THUMBNAIL_OFFSET_SECONDS = 1

# Overall progress bands, in percent.
PROGRESS_DOWNLOAD = (0, 10)
PROGRESS_THUMBNAIL = (10, 15)
PROGRESS_TRANSCODE = (15, 90)
PROGRESS_FINALIZE = (90, 100)
# Share of a rendition's band spent encoding; the rest covers its upload.
ENCODE_SHARE = 0.8
# Smallest move, in percent, worth writing during an encode.
PROGRESS_MIN_STEP = 2

PLAYLIST_CONTENT_TYPE = "application/vnd.apple.mpegurl"
SEGMENT_CONTENT_TYPE = "video/MP2T"

ProgressCallback = Callable[[str, int], None]


class TranscodeError(RuntimeError):
    pass


class JobTimeout(TranscodeError):
    pass


@dataclass(frozen=True)
class Rendition:
    name: str
    width: int
    height: int
    video_bitrate: int  # kbps
    audio_bitrate: int  # kbps

    @property
    def bandwidth(self) -> int:
        return self.video_bitrate * 1000

    @property
    def resolution(self) -> str:
        return f"{self.width}x{self.height}"

    @property
    def playlist_uri(self) -> str:
        return f"{self.name}/playlist.m3u8"


# Lowest first; selection keeps this order.
RENDITIONS = (
    Rendition("360p", 640, 360, 800, 96),
    Rendition("720p", 1280, 720, 2500, 128),
    Rendition("1080p", 1920, 1080, 5000, 192),
    Rendition("4k", 3840, 2160, 14000, 256),
)


def select_renditions(source_height: int) -> list[Rendition]:
    """
    Renditions no taller than the source. A source shorter than the smallest
    rendition still gets that one, so every input yields a playable stream.
    """
    selected = [r for r in RENDITIONS if r.height <= source_height]
    return selected or [RENDITIONS[0]]


def build_master_playlist(renditions) -> str:
    lines = ["#EXTM3U", "#EXT-X-VERSION:3"]
    for r in renditions:
        lines.append(f'#EXT-X-STREAM-INF:BANDWIDTH={r.bandwidth},RESOLUTION={r.resolution},NAME="{r.name}"')
        lines.append(r.playlist_uri)
    return "\n".join(lines) + "\n"


def content_type_for(filename: str) -> str:
    suffix = Path(filename).suffix.lower()
    if suffix == ".m3u8":
        return PLAYLIST_CONTENT_TYPE
    if suffix in (".ts", ".m2ts"):
        return SEGMENT_CONTENT_TYPE
    if suffix in (".jpg", ".jpeg"):
        return "image/jpeg"
    return "application/octet-stream"


def hls_prefix(media_id) -> str:
    return f"hls/{media_id}/"


def thumbnail_key(media_id) -> str:
    return f"thumbnails/{media_id}.jpg"


def remaining_seconds(deadline: float | None) -> float | None:
    """Seconds left before the deadline, or None for no limit. Raises once it has passed."""
    if deadline is None:
        return None
    left = deadline - time.monotonic()
    if left <= 0:
        raise JobTimeout("processing time budget exhausted")
    return left


def run_command(cmd: list[str], deadline: float | None = None) -> subprocess.CompletedProcess:
    """Run an external tool; the subprocess is killed if the deadline passes."""
    try:
        return subprocess.run(
            cmd,
            check=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            timeout=remaining_seconds(deadline),
        )
    except subprocess.TimeoutExpired as e:
        raise JobTimeout(f"{Path(cmd[0]).name} exceeded the processing time budget") from e
    except subprocess.CalledProcessError as e:
        err = e.stderr.decode("utf-8", errors="ignore") if e.stderr else str(e)
        raise TranscodeError(f"{Path(cmd[0]).name} failed: {err.strip()[-2000:]}") from e


def parse_progress_line(line: str, duration: float | None) -> float | None:
    """
    Fraction done (0..1) from one `-progress` key=value line, or None when
    the line carries no usable position.
    """
    if not duration or duration <= 0:
        return None
    key, sep, value = line.strip().partition("=")
    # out_time_ms is microseconds too, despite the name.
    if not sep or key not in ("out_time_us", "out_time_ms"):
        return None
    try:
        seconds = int(value) / 1_000_000
    except ValueError:
        return None
    return max(0.0, min(1.0, seconds / duration))


def run_encoder(cmd: list[str], deadline: float | None = None, duration: float | None = None,
                on_fraction: Callable[[float], None] | None = None) -> None:
    """
    Run ffmpeg with `-progress pipe:1`, feeding each position to on_fraction.

    The deadline is checked on every progress line, and a timer kills the
    process when it passes so a stalled encoder cannot outlive the budget.
    """
    timeout = remaining_seconds(deadline)
    name = Path(cmd[0]).name
    expired = threading.Event()
    with tempfile.TemporaryFile() as errlog:
        proc = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=errlog, text=True)

        def expire():
            expired.set()
            proc.kill()

        timer = threading.Timer(timeout, expire) if timeout is not None else None
        if timer is not None:
            timer.daemon = True
            timer.start()
        try:
            for line in proc.stdout:
                remaining_seconds(deadline)
                fraction = parse_progress_line(line, duration)
                if fraction is not None and on_fraction is not None:
                    on_fraction(fraction)
            returncode = proc.wait()
        finally:
            if timer is not None:
                timer.cancel()
            if proc.poll() is None:
                proc.kill()
                proc.wait()

        if expired.is_set():
            raise JobTimeout(f"{name} exceeded the processing time budget")
        if returncode != 0:
            errlog.seek(0)
            err = errlog.read().decode("utf-8", errors="ignore")
            raise TranscodeError(f"{name} failed: {err.strip()[-2000:]}")


@dataclass(frozen=True)
class SourceInfo:
    height: int
    duration: float | None = None  # seconds


def probe_source(source: Path, deadline: float | None = None) -> SourceInfo:
    cmd = [
        settings.FFPROBE_BINARY,
        "-v", "error",
        "-select_streams", "v:0",
        "-show_entries", "stream=width,height:format=duration",
        "-of", "json",
        str(source),
    ]
    proc = run_command(cmd, deadline)
    data = json.loads(proc.stdout or b"{}")
    streams = data.get("streams") or []
    if not streams or not streams[0].get("height"):
        raise TranscodeError("no video stream found")
    try:
        duration = float((data.get("format") or {}).get("duration"))
    except (TypeError, ValueError):
        duration = None
    return SourceInfo(height=int(streams[0]["height"]), duration=duration)


def scale_filter(rendition: Rendition) -> str:
    w, h = rendition.width, rendition.height
    return f"scale={w}:{h}:force_original_aspect_ratio=decrease,pad={w}:{h}:(ow-iw)/2:(oh-ih)/2"


def encode_command(source: Path, out_dir: Path, rendition: Rendition, segment_seconds: int) -> list[str]:
    return [
        settings.FFMPEG_BINARY,
        "-y",
        "-progress", "pipe:1",
        "-nostats",
        "-i", str(source),
        "-vf", scale_filter(rendition),
        "-c:v", "libx264",
        "-preset", "veryfast",
        "-b:v", f"{rendition.video_bitrate}k",
        "-c:a", "aac",
        "-b:a", f"{rendition.audio_bitrate}k",
        "-hls_time", str(segment_seconds),
        "-hls_list_size", "0",
        "-hls_segment_filename", str(out_dir / "segment_%03d.ts"),
        "-f", "hls",
        str(out_dir / "playlist.m3u8"),
    ]


def thumbnail_command(source: Path, output: Path) -> list[str]:
    return [
        settings.FFMPEG_BINARY,
        "-y",
        "-ss", str(THUMBNAIL_OFFSET_SECONDS),
        "-i", str(source),
        "-frames:v", "1",
        str(output),
    ]


def encode_progress(report, step: str, base: float, width: float) -> Callable[[float], None]:
    """Map an encode fraction onto [base, base + width], skipping moves under PROGRESS_MIN_STEP."""
    last = base

    def on_fraction(fraction: float):
        nonlocal last
        pct = base + width * fraction
        if pct - last >= PROGRESS_MIN_STEP:
            last = pct
            report(step, pct)

    return on_fraction


class HlsTranscoder:
    """
    Turns one source file into an HLS package in object storage:
    a thumbnail, one playlist per rendition and a master playlist.
    """

    def __init__(self, uploader: RetryingUploader | None = None, storage: ObjectStorage | None = None,
                 *, segment_seconds: int | None = None):
        self.storage = storage or ObjectStorage()
        self.uploader = uploader or RetryingUploader(self.storage)
        self.segment_seconds = segment_seconds or settings.HLS_SEGMENT_SECONDS

    def transcode(self, job: QueueJob, on_progress: ProgressCallback, deadline: float | None = None) -> HlsPackage:
        def report(step: str, progress: float):
            on_progress(step, int(round(progress)))

        with tempfile.TemporaryDirectory(prefix=f"hls-{job.media_id}-") as tmp:
            workdir = Path(tmp)

            report("downloading", PROGRESS_DOWNLOAD[0])
            source = self._materialize(job, workdir, deadline)
            report("downloading", PROGRESS_DOWNLOAD[1])

            thumb_key = self._thumbnail(job, source, workdir, deadline)
            report("probing", PROGRESS_THUMBNAIL[1])

            try:
                info = probe_source(source, deadline)
            except JobTimeout:
                raise
            except (TranscodeError, ValueError, OSError) as e:
                logger.warning("Probe failed for %s, assuming %dp: %s", job.media_id, DEFAULT_SOURCE_HEIGHT, e)
                info = SourceInfo(height=DEFAULT_SOURCE_HEIGHT)
            height = info.height

            renditions = select_renditions(height)
            logger.info(
                "Transcoding %s: source=%dp renditions=[%s]",
                job.media_id, height, ", ".join(r.name for r in renditions),
            )

            start, end = PROGRESS_TRANSCODE
            span = (end - start) / len(renditions)
            for idx, rendition in enumerate(renditions):
                base = start + idx * span
                report(rendition.name, base)
                out_dir = workdir / rendition.name
                out_dir.mkdir()
                run_encoder(
                    encode_command(source, out_dir, rendition, self.segment_seconds),
                    deadline,
                    info.duration,
                    encode_progress(report, rendition.name, base, span * ENCODE_SHARE),
                )
                report(rendition.name, base + span * ENCODE_SHARE)
                self._upload_rendition(job, rendition, out_dir, deadline)
                report(rendition.name, base + span)

            report("playlist", PROGRESS_FINALIZE[0])
            master_key = f"{hls_prefix(job.media_id)}master.m3u8"
            remaining_seconds(deadline)
            self.uploader.upload(
                job.bucket,
                master_key,
                build_master_playlist(renditions).encode("utf-8"),
                PLAYLIST_CONTENT_TYPE,
            )
            report("playlist", PROGRESS_FINALIZE[1])

        logger.info("HLS package ready for %s at %s", job.media_id, master_key)
        return HlsPackage(
            master_key=master_key,
            thumbnail_key=thumb_key,
            renditions=tuple(r.name for r in renditions),
        )

    def _materialize(self, job: QueueJob, workdir: Path, deadline: float | None = None) -> Path:
        source = job.source
        if isinstance(source, LocalSource):
            path = Path(source.path)
            if not path.is_file():
                raise FileNotFoundError(f"source file {path} is missing")
            return path
        if isinstance(source, RemoteSource):
            dest = workdir / f"source{Path(source.key).suffix}"
            logger.info("Fetching %s for %s", source.key, job.media_id)
            # Raising from the transfer callback aborts the download once the budget is spent.
            path = self.storage.download(
                job.bucket, source.key, dest, callback=lambda _bytes: remaining_seconds(deadline)
            )
            remaining_seconds(deadline)
            return path
        raise TypeError(f"unsupported source locator: {source!r}")

    def _thumbnail(self, job: QueueJob, source: Path, workdir: Path, deadline: float | None) -> str | None:
        """Best effort: any failure short of the time budget is logged and skipped."""
        raw = workdir / "thumbnail_raw.jpg"
        out = workdir / "thumbnail.jpg"
        try:
            run_command(thumbnail_command(source, raw), deadline)
            with Image.open(raw) as img:
                img = img.convert("RGB")
                img.thumbnail(THUMBNAIL_SIZE)
                img.save(out, format="JPEG", quality=85)
            key = thumbnail_key(job.media_id)
            with open(out, "rb") as fh:
                self.uploader.upload(job.bucket, key, fh, "image/jpeg")
            return key
        except JobTimeout:
            raise
        except Exception as e:
            logger.warning("Thumbnail generation failed for %s: %s", job.media_id, e)
            return None

    def _upload_rendition(self, job: QueueJob, rendition: Rendition, out_dir: Path, deadline: float | None):
        # Segments before the playlist so a published playlist never points at a missing segment.
        files = sorted(
            (p for p in out_dir.iterdir() if p.is_file()),
            key=lambda p: (p.suffix == ".m3u8", p.name),
        )
        prefix = f"{hls_prefix(job.media_id)}{rendition.name}/"
        for path in files:
            remaining_seconds(deadline)
            with open(path, "rb") as fh:
                self.uploader.upload(job.bucket, prefix + path.name, fh, content_type_for(path.name))
        logger.info("Uploaded %d files for %s/%s", len(files), job.media_id, rendition.name)
