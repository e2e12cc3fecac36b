import logging
from pathlib import Path
from typing import Iterable, List, Optional

from . import config
from .access import AccessGrantProvider
from .database.db import DBManager
from .database.ops import CatalogStore
from .directories import DirectoryRegistry
from .importing.local_files import ImportOrchestrator
from .metadata.grouping import MediaGrouper
from .models import Directory, MediaItem
from .scanning.filesystem import DiskScanner
from .thumbnails.cache import ThumbnailCache


class MediaBrowserApp:
    """
    Wires the services together. One instance owns the catalog database and
    the thumbnail cache for the life of the process.
    """

    def __init__(self,
                 db_path: Optional[Path] = None,
                 cache_dir: Optional[Path] = None,
                 grants: Optional[AccessGrantProvider] = None,
                 strict: bool = False):
        self.db_manager = DBManager(db_path or config.default_db_path())
        self.catalog = CatalogStore(self.db_manager, strict=strict)
        self.catalog.initialize_schema()

        self.scanner = DiskScanner()
        self.grouper = MediaGrouper()
        self.thumbnails = ThumbnailCache(cache_dir)
        self.directories = DirectoryRegistry(self.catalog, grants)
        self.importer = ImportOrchestrator(self.thumbnails, grouper=self.grouper, scanner=self.scanner)

    def scan(self, directories: Optional[Iterable[Directory]] = None, rebuild: bool = False) -> List[MediaItem]:
        """
        Indexes watched directories into the catalog.

        Args:
            directories: roots to scan; defaults to every watched directory
            rebuild: clear the catalog first
        """
        if directories is None:
            directories = self.directories.directories()
        directories = list(directories)

        if rebuild:
            logging.info("Rebuilding catalog from scratch.")
            self.catalog.clear_all()

        # Regrouped items start as not_synced; keep whatever status was recorded
        known_status = {str(i.original_url): i.sync_status for i in self.catalog.all_items()}

        indexed: List[MediaItem] = []
        for directory in directories:
            logging.info(f"Scanning {directory.path}...")
            batches = self.scanner.group_by_directory(directory.path)

            saved = 0
            for files in batches.values():
                for item in self.grouper.group(files):
                    item.directory_id = directory.id
                    item.sync_status = known_status.get(str(item.original_url), item.sync_status)
                    if self.catalog.upsert_item(item):
                        saved += 1
                    indexed.append(item)

            logging.info(f"Indexed {saved} items from {directory.path}.")

        return indexed

    def close(self):
        self.thumbnails.close()
        self.catalog.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
