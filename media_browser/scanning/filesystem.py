import logging
import os
import threading
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from .. import config


def _is_hidden(name: str) -> bool:
    # '._' AppleDouble files are hidden too
    return name.startswith(".")


class DiskScanner:
    """Walks source trees and yields media files, skipping hidden entries."""

    def iter_media_files(self, root: Path, cancel: Optional[threading.Event] = None) -> Iterator[Path]:
        for path in self._iter_files(root, cancel):
            if config.is_media(path):
                yield path

    def group_by_directory(self, root: Path, cancel: Optional[threading.Event] = None) -> Dict[Path, List[Path]]:
        """Media files bucketed by parent directory, in traversal order."""
        dir_batches: Dict[Path, List[Path]] = {}
        for path in self.iter_media_files(root, cancel):
            dir_batches.setdefault(path.parent, []).append(path)
        return dir_batches

    def _iter_files(self, root: Path, cancel: Optional[threading.Event] = None) -> Iterator[Path]:
        """Depth-first walker using os.scandir for speed."""
        stack = [Path(root)]
        while stack:
            if cancel is not None and cancel.is_set():
                logging.info(f"Walk of {root} cancelled.")
                return
            current = stack.pop()

            try:
                with os.scandir(current) as it:
                    entries = list(it)
            except OSError as e:
                logging.warning(f"Cannot read directory {current}: {e}")
                continue

            # Sort for stable traversal order
            entries.sort(key=lambda e: e.name.lower())

            dirs = []
            files = []
            for e in entries:
                if _is_hidden(e.name):
                    continue
                try:
                    if e.is_dir(follow_symlinks=False):
                        dirs.append(Path(e.path))
                    elif e.is_file(follow_symlinks=False):
                        files.append(Path(e.path))
                except OSError as err:
                    logging.debug(f"Skipping {e.path}: {err}")

            # Push dirs to stack (reversed so we process A before Z)
            for d in reversed(dirs):
                stack.append(d)

            for f in files:
                yield f
