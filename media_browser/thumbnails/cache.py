"""
Disk-backed thumbnail cache with in-flight request coalescing.

Layout of the cache directory:
    <sha256(source|size_class)>.jpg   resized image
    <sha256(source|size_class)>.json  manifest {"source": ..., "size_class": ...}

The manifest is what lets the cleanup sweep map a cached file back to its
source without decoding anything.
"""
import asyncio
import hashlib
import json
import logging
import os
import threading
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

import cv2
from PIL import Image, ImageOps

from .. import config
from ..database.ops import CatalogStore
from ..models import MediaItem


class SizeClass(Enum):
    SMALL = "small"
    MEDIUM = "medium"
    LARGE = "large"

    @property
    def pixels(self) -> int:
        return config.THUMBNAIL_SIZE_CLASSES[self.value]


def size_class_for(pixels: int) -> SizeClass:
    """Smallest size class whose longest edge covers `pixels`."""
    for size_class in sorted(SizeClass, key=lambda s: s.pixels):
        if pixels <= size_class.pixels:
            return size_class
    return SizeClass.LARGE


CacheKey = Tuple[str, SizeClass]


class ThumbnailCache:
    """
    Returns decoded thumbnails (PIL images) for (source, size class) pairs.

    Lookups go memory -> disk -> render. Rendering runs on a thread pool;
    concurrent requests for the same key share one in-flight task. Failed
    renders return None and are never cached.
    """

    def __init__(self,
                 cache_dir: Optional[Path] = None,
                 workers: int = config.THUMBNAIL_WORKERS,
                 memory_entries: int = config.THUMBNAIL_MEMORY_ENTRIES):
        self.cache_dir = Path(cache_dir) if cache_dir else config.default_thumbnail_dir()
        self.memory_entries = memory_entries
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="thumbnail")
        self._memory: "OrderedDict[CacheKey, Image.Image]" = OrderedDict()
        self._memory_lock = threading.Lock()
        self._inflight: Dict[CacheKey, asyncio.Future] = {}
        self._dir_lock = threading.Lock()
        self._dir_ready = False
        # Serializes entry writes against cleanup sweeps
        self._io_lock = threading.Lock()

    def close(self):
        self._executor.shutdown(wait=True)

    # --- Public API ---

    async def thumbnail(self, source: Path, size_class: SizeClass = SizeClass.MEDIUM) -> Optional[Image.Image]:
        key = self._key(source, size_class)

        cached = self._memory_get(key)
        if cached is not None:
            return cached

        # Check-and-register happens before the first await
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._generate(key))
            self._inflight[key] = task
            task.add_done_callback(lambda t, k=key: self._forget(k, t))

        # Shielded so one cancelled caller does not cancel the others
        return await asyncio.shield(task)

    async def thumbnail_for_item(self, item: MediaItem, size_class: SizeClass = SizeClass.MEDIUM) -> Optional[Image.Image]:
        """Thumbnail of the displayed file: the edit if any, the still image for live photos."""
        return await self.thumbnail(item.display_path, size_class)

    def has_thumbnail(self, source: Path, size_class: SizeClass = SizeClass.MEDIUM) -> bool:
        key = self._key(source, size_class)
        with self._memory_lock:
            if key in self._memory:
                return True
        return self._entry_path(key).exists()

    def cleanup_dangling_thumbnails(self, catalog: CatalogStore) -> int:
        """
        Removes cached entries whose source is referenced by no catalog item
        and is not an existing file under a watched directory.
        Returns the number of entries removed.
        """
        if not self.cache_dir.exists():
            return 0

        snapshot = catalog.snapshot()
        if snapshot is None:
            logging.warning("Catalog unreadable; skipping thumbnail cleanup.")
            return 0

        referenced = {self._identity(p) for p in snapshot.referenced_paths}
        roots = [Path(self._identity(d.path)) for d in snapshot.directories]

        removed = 0
        # Writers hold the same lock, so every entry seen here is complete
        with self._io_lock:
            for manifest_path in sorted(self.cache_dir.glob("*.json")):
                if self._sweep_entry(manifest_path, referenced, roots):
                    removed += 1

            # Images without a manifest and temp files are leftovers of a crashed process
            for image_path in self.cache_dir.glob(f"*{config.THUMBNAIL_EXTENSION}"):
                if not image_path.with_suffix(".json").exists():
                    logging.debug(f"Removing unidentified thumbnail {image_path.name}")
                    image_path.unlink(missing_ok=True)
            for leftover in self.cache_dir.glob("*.tmp"):
                leftover.unlink(missing_ok=True)

        logging.info(f"Thumbnail cleanup removed {removed} dangling entries.")
        return removed

    def _sweep_entry(self, manifest_path: Path, referenced: Set[str], roots: List[Path]) -> bool:
        """Deletes one entry if its source is orphaned. Returns True when removed."""
        image_path = manifest_path.with_suffix(config.THUMBNAIL_EXTENSION)
        try:
            manifest = json.loads(manifest_path.read_text(encoding="utf-8"))
            source = manifest["source"]
            size_class = SizeClass(manifest["size_class"])
        except (OSError, ValueError, KeyError, TypeError) as e:
            logging.warning(f"Unreadable thumbnail manifest {manifest_path.name}: {e}")
            return False

        if not image_path.exists():
            # Image deleted out from under us; nothing to count
            manifest_path.unlink(missing_ok=True)
            return False

        if source in referenced or self._is_watched_file(Path(source), roots):
            return False

        try:
            image_path.unlink(missing_ok=True)
            manifest_path.unlink(missing_ok=True)
        except OSError as e:
            logging.warning(f"Could not remove thumbnail for {source}: {e}")
            return False

        with self._memory_lock:
            self._memory.pop((source, size_class), None)
        logging.debug(f"Removed dangling thumbnail for {source} ({size_class.value})")
        return True

    # --- Generation ---

    async def _generate(self, key: CacheKey) -> Optional[Image.Image]:
        loop = asyncio.get_running_loop()
        try:
            image = await loop.run_in_executor(self._executor, self._load_or_render, key)
        except Exception as e:
            logging.warning(f"Thumbnail generation failed for {key[0]}: {e}")
            return None

        if image is not None:
            self._memory_put(key, image)
        return image

    def _load_or_render(self, key: CacheKey) -> Optional[Image.Image]:
        """Runs on the worker pool."""
        self._ensure_cache_dir()
        source, size_class = key
        entry = self._entry_path(key)

        if entry.exists():
            try:
                with Image.open(entry) as im:
                    im.load()
                    return im.copy()
            except OSError as e:
                logging.warning(f"Discarding corrupt cached thumbnail {entry.name}: {e}")
                entry.unlink(missing_ok=True)

        image = self._render(Path(source), size_class.pixels)
        if image is None:
            return None

        self._write_entry(key, image)
        return image

    def _render(self, source: Path, max_px: int) -> Optional[Image.Image]:
        try:
            if config.is_video(source):
                img = self._video_frame(source)
                if img is None:
                    return None
            else:
                with Image.open(source) as im:
                    img = ImageOps.exif_transpose(im).convert("RGB")
            img.thumbnail((max_px, max_px), Image.Resampling.LANCZOS)
            return img
        except Exception as e:
            logging.debug(f"Cannot decode {source}: {e}")
            return None

    def _video_frame(self, source: Path) -> Optional[Image.Image]:
        cap = cv2.VideoCapture(str(source))
        try:
            if not cap.isOpened():
                logging.debug(f"OpenCV cannot open {source}")
                return None
            ok, frame = cap.read()
            if not ok or frame is None:
                return None
            return Image.fromarray(cv2.cvtColor(frame, cv2.COLOR_BGR2RGB))
        finally:
            cap.release()

    def _write_entry(self, key: CacheKey, image: Image.Image):
        """
        Image first, then manifest; each lands via rename so readers never
        see partial files. Holds the io lock so a sweep never sees half an entry.
        """
        source, size_class = key
        entry = self._entry_path(key)
        manifest = entry.with_suffix(".json")
        suffix = f".{os.getpid()}.{threading.get_ident()}.tmp"
        tmp_image = entry.with_name(entry.name + suffix)
        tmp_manifest = manifest.with_name(manifest.name + suffix)

        with self._io_lock:
            try:
                image.save(tmp_image, format="JPEG", quality=config.THUMBNAIL_JPEG_QUALITY)
                os.replace(tmp_image, entry)

                tmp_manifest.write_text(json.dumps({"source": source, "size_class": size_class.value}), encoding="utf-8")
                os.replace(tmp_manifest, manifest)
            except (OSError, ValueError) as e:
                # Still usable from memory this session
                logging.warning(f"Could not persist thumbnail for {source}: {e}")
                for leftover in (tmp_image, tmp_manifest, entry):
                    leftover.unlink(missing_ok=True)

    # --- Helpers ---

    def _ensure_cache_dir(self):
        if self._dir_ready:
            return
        with self._dir_lock:
            if not self._dir_ready:
                self.cache_dir.mkdir(parents=True, exist_ok=True)
                self._dir_ready = True

    def _forget(self, key: CacheKey, task: asyncio.Future):
        if self._inflight.get(key) is task:
            del self._inflight[key]

    def _memory_get(self, key: CacheKey) -> Optional[Image.Image]:
        with self._memory_lock:
            image = self._memory.get(key)
            if image is not None:
                self._memory.move_to_end(key)
            return image

    def _memory_put(self, key: CacheKey, image: Image.Image):
        with self._memory_lock:
            self._memory[key] = image
            self._memory.move_to_end(key)
            while len(self._memory) > self.memory_entries:
                self._memory.popitem(last=False)

    def _entry_path(self, key: CacheKey) -> Path:
        source, size_class = key
        digest = hashlib.sha256(f"{source}|{size_class.value}".encode("utf-8")).hexdigest()
        return self.cache_dir / f"{digest}{config.THUMBNAIL_EXTENSION}"

    @classmethod
    def _key(cls, source: Path, size_class: SizeClass) -> CacheKey:
        return cls._identity(source), size_class

    @staticmethod
    def _identity(path) -> str:
        return str(Path(path).expanduser().resolve())

    @staticmethod
    def _is_watched_file(source: Path, roots: List[Path]) -> bool:
        if not any(source.is_relative_to(root) for root in roots):
            return False
        return source.is_file()
