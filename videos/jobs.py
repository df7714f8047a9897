import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Union

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LocalSource:
    """A file already on this machine. temporary=True means the job owns it."""
    path: Path
    temporary: bool = False


@dataclass(frozen=True)
class RemoteSource:
    """An object key, relative to the job's bucket ref."""
    key: str


SourceLocator = Union[LocalSource, RemoteSource]


@dataclass
class QueueJob:
    media_id: str
    source: SourceLocator
    bucket: str
    filename: str

    def release(self) -> None:
        """Drop any local file this job owns. Safe to call more than once."""
        if isinstance(self.source, LocalSource) and self.source.temporary:
            try:
                Path(self.source.path).unlink(missing_ok=True)
            except OSError as exc:
                logger.warning("Could not remove temp upload %s: %s", self.source.path, exc)


@dataclass(frozen=True)
class HlsPackage:
    master_key: str
    thumbnail_key: str | None = None
    renditions: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class JobResult:
    media_id: str
    ok: bool
    master_key: str | None = None
    error: str | None = None
