from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple


class MediaType(Enum):
    PHOTO = "photo"
    LIVE_PHOTO = "livePhoto"
    VIDEO = "video"


class SyncStatus(Enum):
    """State of an external transfer; the core never performs the transfer."""
    NOT_APPLICABLE = "not_applicable"
    NOT_SYNCED = "not_synced"
    SYNCING = "syncing"
    SYNCED = "synced"
    FAILED = "failed"


@dataclass
class GPSLocation:
    latitude: float
    longitude: float
    altitude: Optional[float] = None


@dataclass
class MediaMetadata:
    """
    Best-effort descriptive metadata. Every field is independently optional.

    `extras` is the open extension bag (duration, make, model, lens, iso,
    aperture, shutter_speed, ...). It is persisted as a JSON blob so new keys
    never require a schema change.
    """
    creation_date: Optional[datetime] = None
    modification_date: Optional[datetime] = None
    exif_date: Optional[datetime] = None
    dimensions: Optional[Tuple[int, int]] = None
    gps: Optional[GPSLocation] = None
    extras: Dict[str, Any] = field(default_factory=dict)

    @property
    def duration(self) -> Optional[float]:
        return self.extras.get('duration')

    @property
    def make(self) -> Optional[str]:
        return self.extras.get('make')

    @property
    def model(self) -> Optional[str]:
        return self.extras.get('model')

    def best_date(self) -> Optional[datetime]:
        return self.exif_date or self.creation_date or self.modification_date


@dataclass
class MediaItem:
    """
    One logical photo or video: a primary file plus optional companions.
    `id` is assigned by the catalog on first insert.
    """
    original_url: Path
    type: MediaType
    edited_url: Optional[Path] = None
    live_video_url: Optional[Path] = None
    metadata: Optional[MediaMetadata] = None
    sync_status: SyncStatus = SyncStatus.NOT_SYNCED
    directory_id: Optional[int] = None
    id: Optional[int] = None

    def __post_init__(self):
        if self.type is MediaType.LIVE_PHOTO and self.live_video_url is None:
            raise ValueError(f"Live photo {self.original_url} has no companion video")

    @property
    def display_path(self) -> Path:
        return self.edited_url or self.original_url

    @property
    def display_name(self) -> str:
        return self.original_url.name

    def best_date(self) -> Optional[datetime]:
        if self.metadata is None:
            return None
        return self.metadata.best_date()

    def all_paths(self) -> List[Path]:
        """Primary file first, then companions."""
        return [p for p in (self.original_url, self.edited_url, self.live_video_url) if p is not None]

    def matches_query(self, query: str) -> bool:
        """Case-insensitive match on file name, extension, camera make and model."""
        q = query.strip().casefold()
        if not q:
            return True
        candidates = [self.display_name, self.original_url.suffix.lstrip('.')]
        if self.metadata:
            candidates.extend([self.metadata.make or "", self.metadata.model or ""])
        return any(q in c.casefold() for c in candidates)


@dataclass
class Directory:
    """A watched root. `bookmark` is opaque to the core."""
    path: Path
    bookmark: bytes
    id: Optional[int] = None


def filter_items(items: Iterable[MediaItem], query: str) -> List[MediaItem]:
    return [item for item in items if item.matches_query(query)]
