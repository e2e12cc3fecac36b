import asyncio
import logging
import os
import shutil
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Protocol

from tqdm import tqdm

from .. import config
from ..metadata.grouping import MediaGrouper
from ..models import MediaItem
from ..scanning.filesystem import DiskScanner
from ..thumbnails.cache import SizeClass, ThumbnailCache

# Runs a zero-argument callable on the caller's preferred context (e.g. a UI thread)
Dispatcher = Callable[[Callable[[], None]], None]


class ProgressSink(Protocol):
    def item_started(self, item: MediaItem) -> None: ...

    def item_completed(self, item: MediaItem, copied: List[Path]) -> None: ...


class TqdmProgress:
    """Progress sink that drives a console progress bar."""

    def __init__(self, total: int, desc: str = "Importing"):
        self.bar = tqdm(total=total, desc=desc, unit="item")

    def item_started(self, item: MediaItem):
        self.bar.set_postfix_str(item.display_name)

    def item_completed(self, item: MediaItem, copied: List[Path]):
        self.bar.update(1)

    def close(self):
        self.bar.close()


@dataclass
class ImportReport:
    copied: List[Path] = field(default_factory=list)
    skipped: List[Path] = field(default_factory=list)
    failed: List[Path] = field(default_factory=list)


class ImportOrchestrator:
    """
    Preview and copy media from a source tree into a date-sharded library.

    Both operations are coroutines and can be cancelled between files. A file
    being copied lands under a hidden '.part' name and is renamed into place,
    so the destination never holds a truncated file.
    """

    def __init__(self,
                 thumbnails: ThumbnailCache,
                 grouper: Optional[MediaGrouper] = None,
                 scanner: Optional[DiskScanner] = None,
                 dispatch: Optional[Dispatcher] = None):
        self.thumbnails = thumbnails
        self.grouper = grouper or MediaGrouper()
        self.scanner = scanner or DiskScanner()
        self.dispatch = dispatch

    async def preview(self,
                      source_dir: Path,
                      on_found: Callable[[MediaItem], None],
                      size_class: SizeClass = SizeClass.SMALL) -> List[MediaItem]:
        """
        Groups every directory under `source_dir` and reports each item whose
        thumbnail renders. Items without a thumbnail are left out of the
        preview only.
        """
        source_dir = Path(source_dir)
        cancel = threading.Event()
        found: List[MediaItem] = []

        try:
            batches = await asyncio.to_thread(self.scanner.group_by_directory, source_dir, cancel)
            logging.info(f"Previewing {sum(len(v) for v in batches.values())} files in {len(batches)} directories under {source_dir}")

            for directory, files in batches.items():
                items = await asyncio.to_thread(self.grouper.group, files)
                thumbs = await asyncio.gather(
                    *(self.thumbnails.thumbnail_for_item(item, size_class) for item in items)
                )
                for item, thumb in zip(items, thumbs):
                    if thumb is None:
                        logging.debug(f"No thumbnail for {item.display_path}; left out of preview.")
                        continue
                    found.append(item)
                    self._emit(on_found, item)
        except asyncio.CancelledError:
            # Stops a walk still running on its worker thread
            cancel.set()
            logging.info(f"Preview of {source_dir} cancelled after {len(found)} items.")
            raise

        return found

    async def import_items(self,
                           items: Iterable[MediaItem],
                           source_dir: Path,
                           dest_dir: Path,
                           progress: Optional[ProgressSink] = None) -> ImportReport:
        """
        Copies each item's files into <dest_dir>/YYYY/MM/DD/. Vanished sources
        and existing destinations are skipped; a failed copy is logged and the
        remaining items still run.
        """
        source_dir = Path(source_dir)
        dest_dir = Path(dest_dir)
        report = ImportReport()

        for item in items:
            if progress:
                self._emit(progress.item_started, item)

            shard = dest_dir / self.date_shard(item, source_dir)
            copied: List[Path] = []
            for src in item.all_paths():
                src = src if src.is_absolute() else source_dir / src
                try:
                    dest = await asyncio.to_thread(self._copy_file, src, shard)
                except OSError as e:
                    logging.error(f"Failed to copy {src} -> {shard}: {e}")
                    report.failed.append(src)
                    continue

                if dest is None:
                    report.skipped.append(src)
                else:
                    copied.append(dest)
                    report.copied.append(dest)

            if progress:
                self._emit(progress.item_completed, item, copied)

        logging.info(
            f"Import finished: {len(report.copied)} copied, "
            f"{len(report.skipped)} skipped, {len(report.failed)} failed."
        )
        return report

    @staticmethod
    def date_shard(item: MediaItem, source_dir: Optional[Path] = None) -> Path:
        """
        Relative YYYY/MM/DD directory for an item's best available date.
        Undated items fall back to the file time; relative paths are taken
        from `source_dir`.
        """
        dt = item.best_date()
        if dt is None:
            src = item.original_url
            if source_dir is not None and not src.is_absolute():
                src = Path(source_dir) / src
            try:
                dt = datetime.fromtimestamp(src.stat().st_mtime)
            except OSError:
                dt = datetime.now()
        return Path(config.DATE_SHARD_PATTERN.format(year=dt.year, month=dt.month, day=dt.day))

    def _copy_file(self, src: Path, shard: Path) -> Optional[Path]:
        """Returns the destination path, or None when the file was skipped."""
        if not src.exists():
            logging.warning(f"{src} vanished before import; skipping.")
            return None

        dest = shard / src.name
        if dest.exists():
            logging.info(f"{dest} already exists; skipping.")
            return None

        shard.mkdir(parents=True, exist_ok=True)
        part = dest.with_name(f".{dest.name}.part")
        try:
            with src.open("rb") as fin, part.open("wb") as fout:
                shutil.copyfileobj(fin, fout, config.COPY_CHUNK_SIZE)
            shutil.copystat(src, part)
            os.replace(part, dest)
        except FileNotFoundError:
            part.unlink(missing_ok=True)
            logging.warning(f"{src} vanished during import; skipping.")
            return None
        except BaseException:
            part.unlink(missing_ok=True)
            raise

        logging.debug(f"Copied {src} -> {dest}")
        return dest

    def _emit(self, callback: Callable, *args):
        def call():
            try:
                callback(*args)
            except Exception:
                logging.exception("Import callback failed.")

        if self.dispatch:
            self.dispatch(call)
        else:
            call()
