import logging
import re
from collections import defaultdict
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Tuple

from .. import config
from ..models import MediaItem, MediaType
from .extract import MetadataExtractor

_EDIT_SUFFIXES = [re.compile(p, re.IGNORECASE) for p in config.EDIT_SUFFIX_PATTERNS]
_EDIT_INFIX = re.compile(config.EDIT_INFIX_PATTERN, re.IGNORECASE)


@dataclass(frozen=True)
class Candidate:
    """A single file competing for a slot inside a group."""
    path: Path
    key: str
    is_edited: bool
    is_video: bool
    mtime: float


# Receives every candidate for one slot and returns them winner-first.
TieBreaker = Callable[[List[Candidate]], List[Candidate]]


def most_recent_wins(candidates: List[Candidate]) -> List[Candidate]:
    """Newest modification time first; equal times fall back to the file name."""
    return sorted(candidates, key=lambda c: (-c.mtime, c.path.name))


def split_grouping_key(filename: str) -> Tuple[str, bool]:
    """
    Returns (grouping_key, is_edited) for a file name.

    'IMG_001_edited.JPG', 'IMG_001 (Edited).JPG' and 'IMG_E001.JPG' all
    share the key of 'IMG_001.JPG' and are flagged as edited.
    """
    stem = Path(filename).stem
    for pattern in _EDIT_SUFFIXES:
        stripped = pattern.sub('', stem)
        if stripped != stem and stripped:
            return stripped.casefold(), True

    m = _EDIT_INFIX.match(stem)
    if m:
        return f"{m.group('prefix')}{m.group('digits')}".casefold(), True

    return stem.casefold(), False


class MediaGrouper:
    """
    Rebuilds logical media items from loose files.

    Files in the same directory with the same grouping key form one group.
    Within a group the original image is primary, an edited image fills the
    edited slot and a video becomes the live companion. Candidates that lose
    a slot are emitted as standalone items rather than dropped.
    """

    def __init__(self,
                 extractor: Optional[MetadataExtractor] = None,
                 tie_breaker: TieBreaker = most_recent_wins,
                 extract_metadata: bool = True):
        self.extractor = extractor or MetadataExtractor()
        self.tie_breaker = tie_breaker
        self.extract_metadata = extract_metadata

    def group(self, paths: Iterable[Path]) -> List[MediaItem]:
        candidates = [c for c in (self._make_candidate(Path(p)) for p in paths) if c]

        # Sort first so assignment never depends on input order
        candidates.sort(key=lambda c: (str(c.path.parent), c.key, c.mtime, c.path.name))

        groups = defaultdict(list)
        for c in candidates:
            groups[(str(c.path.parent), c.key)].append(c)

        items: List[MediaItem] = []
        for group_key in sorted(groups):
            items.extend(self._assign(groups[group_key]))

        if self.extract_metadata:
            for item in items:
                item.metadata = self.extractor.extract(item.original_url)

        logging.debug(f"Grouped {len(candidates)} files into {len(items)} items.")
        return items

    def _make_candidate(self, path: Path) -> Optional[Candidate]:
        if not config.is_media(path):
            logging.debug(f"Skipping non-media file {path}")
            return None
        try:
            mtime = path.stat().st_mtime
        except OSError as e:
            logging.warning(f"Cannot stat {path}, skipping: {e}")
            return None

        key, is_edited = split_grouping_key(path.name)
        return Candidate(
            path=path,
            key=key,
            is_edited=is_edited,
            is_video=config.is_video(path),
            mtime=mtime,
        )

    def _assign(self, group: List[Candidate]) -> List[MediaItem]:
        originals = [c for c in group if not c.is_video and not c.is_edited]
        edits = [c for c in group if not c.is_video and c.is_edited]
        videos = [c for c in group if c.is_video and not c.is_edited]
        video_edits = [c for c in group if c.is_video and c.is_edited]

        items: List[MediaItem] = []

        if originals or edits:
            if originals:
                primary, spare_photos = self._take(originals)
                edited, spare_edits = self._take(edits)
            else:
                # Only edited copies survived; the newest stands as its own original
                primary, spare_edits = self._take(edits)
                edited, spare_photos = None, []
            live, spare_videos = self._take(videos)

            items.append(MediaItem(
                original_url=primary.path,
                edited_url=edited.path if edited else None,
                live_video_url=live.path if live else None,
                type=MediaType.LIVE_PHOTO if live else MediaType.PHOTO,
            ))
            leftovers_photo = spare_photos + spare_edits
            leftovers_video = spare_videos + video_edits
        else:
            if videos:
                primary, spare_videos = self._take(videos)
                edited, spare_video_edits = self._take(video_edits)
            else:
                primary, spare_video_edits = self._take(video_edits)
                edited, spare_videos = None, []

            items.append(MediaItem(
                original_url=primary.path,
                edited_url=edited.path if edited else None,
                type=MediaType.VIDEO,
            ))
            leftovers_photo = []
            leftovers_video = spare_videos + spare_video_edits

        for c in leftovers_photo:
            logging.info(f"{c.path.name} lost its slot to a newer file; keeping it as a separate photo.")
            items.append(MediaItem(original_url=c.path, type=MediaType.PHOTO))
        for c in leftovers_video:
            logging.info(f"{c.path.name} lost its slot to a newer file; keeping it as a separate video.")
            items.append(MediaItem(original_url=c.path, type=MediaType.VIDEO))

        return items

    def _take(self, pool: List[Candidate]) -> Tuple[Optional[Candidate], List[Candidate]]:
        """Splits a slot pool into (winner, losers)."""
        if not pool:
            return None, []
        ranked = self.tie_breaker(list(pool))
        return ranked[0], ranked[1:]
