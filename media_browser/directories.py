import logging
import threading
from pathlib import Path
from typing import List, Optional

from .access import AccessGrantProvider, PathAccessGrants
from .database.ops import CatalogStore
from .exceptions import AccessGrantError, ErrorKind, OperationResult
from .models import Directory


class DirectoryRegistry:
    """
    Watched directories, persisted through the catalog as a whole list.
    Mutations are serialized so two concurrent adds cannot drop each other.
    """

    def __init__(self, catalog: CatalogStore, grants: Optional[AccessGrantProvider] = None):
        self.catalog = catalog
        self.grants = grants or PathAccessGrants()
        self._lock = threading.Lock()

    def add(self, path: Path) -> Optional[Directory]:
        path = Path(path).expanduser().resolve()
        with self._lock:
            current = self.catalog.load_directories()
            for d in current:
                if d.path == path:
                    logging.info(f"{path} is already watched.")
                    return d

            try:
                token = self.grants.grant_access(path)
            except AccessGrantError as e:
                logging.error(f"Access to {path} was not granted: {e}")
                return None

            directory = Directory(path=path, bookmark=token)
            result = self.catalog.save_directories(current + [directory])
            if not result:
                return None

        logging.info(f"Watching {path}")
        return directory

    def remove(self, path: Path) -> OperationResult:
        path = Path(path).expanduser().resolve()
        with self._lock:
            current = self.catalog.load_directories()
            remaining = [d for d in current if d.path != path]
            if len(remaining) == len(current):
                return OperationResult.failure(ErrorKind.TRANSIENT_IO, f"{path} is not watched")
            result = self.catalog.save_directories(remaining)

        if result:
            logging.info(f"Stopped watching {path}")
        return result

    def directories(self) -> List[Directory]:
        """Watched directories whose grants still resolve; stale grants are dropped from storage."""
        with self._lock:
            stored = self.catalog.load_directories()
            live = []
            for d in stored:
                resolved = self.grants.resolve(d.bookmark)
                if resolved is None:
                    logging.warning(f"Access grant for {d.path} is stale; removing it.")
                    continue
                d.path = resolved
                live.append(d)

            if len(live) != len(stored):
                self.catalog.save_directories(live)
        return live
