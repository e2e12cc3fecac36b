import base64
import binascii
import json
import sqlite3
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from ..exceptions import ErrorKind, OperationResult
from ..models import Directory, GPSLocation, MediaItem, MediaMetadata, MediaType, SyncStatus
from .db import DBManager


@dataclass
class CatalogSnapshot:
    referenced_paths: Set[str]
    directories: List[Directory]


class CatalogStore:
    """
    Durable catalog of media items and watched directories.

    Every operation contains its own failures: mutators log and return an
    OperationResult, reads log and return an empty result. With strict=True
    the same failures are raised as CatalogError instead.
    """

    def __init__(self, db: DBManager, strict: bool = False):
        self.db = db
        self.strict = strict
        self._columns: Optional[Set[str]] = None
        self._migration_error: Optional[str] = None

    @classmethod
    def open(cls, db_path, strict: bool = False) -> "CatalogStore":
        store = cls(DBManager(db_path), strict=strict)
        store.initialize_schema()
        return store

    def close(self):
        self.db.close()
        self._columns = None

    @property
    def degraded(self) -> bool:
        """True when the schema could not be fully upgraded."""
        self._ensure_ready()
        return self._migration_error is not None

    def initialize_schema(self) -> OperationResult:
        try:
            self.db.connect()
        except sqlite3.Error as e:
            return self._fail(ErrorKind.PERSISTENCE, f"Could not open catalog {self.db.db_path}: {e}")

        state = self.db.schema
        self._columns = set(state.item_columns)
        self._migration_error = state.error
        if state.degraded:
            logging.warning("Catalog is running with a partially migrated schema.")
            return self._fail(ErrorKind.MIGRATION, f"Schema migration incomplete: {state.error}")
        return OperationResult.success()

    # --- Items ---

    def upsert_item(self, item: MediaItem) -> OperationResult:
        """
        Insert or replace by primary file path. The row id survives updates,
        and `item.id` is set from it.
        """
        self._ensure_ready()
        row = {k: v for k, v in self._item_to_row(item).items() if k in self._columns}
        cols = list(row)
        updates = ", ".join(f"{c} = excluded.{c}" for c in cols if c != "url")
        sql = (
            f"INSERT INTO media_items ({', '.join(cols)}) "
            f"VALUES ({', '.join('?' for _ in cols)}) "
            f"ON CONFLICT(url) DO UPDATE SET {updates}"
        )

        try:
            with self.db.write() as conn:
                conn.execute(sql, [row[c] for c in cols])
                found = conn.execute("SELECT id FROM media_items WHERE url = ?", (row["url"],)).fetchone()
        except sqlite3.Error as e:
            return self._fail(ErrorKind.PERSISTENCE, f"Failed to save {item.original_url}: {e}")

        item.id = found[0]
        return OperationResult.success()

    def upsert_items(self, items: List[MediaItem]) -> OperationResult:
        failures = [r for r in (self.upsert_item(item) for item in items) if not r]
        if failures:
            return OperationResult.failure(ErrorKind.PERSISTENCE, f"{len(failures)} of {len(items)} items not saved")
        return OperationResult.success()

    def all_items(self) -> List[MediaItem]:
        return self._select_items("SELECT * FROM media_items ORDER BY id")

    def items_for_directory(self, directory_id: int) -> List[MediaItem]:
        self._ensure_ready()
        if "directory_id" not in self._columns:
            return []
        return self._select_items("SELECT * FROM media_items WHERE directory_id = ? ORDER BY id", (directory_id,))

    def get_item(self, path: Path) -> Optional[MediaItem]:
        items = self._select_items("SELECT * FROM media_items WHERE url = ?", (str(path),))
        return items[0] if items else None

    def item_count(self) -> int:
        self._ensure_ready()
        try:
            with self.db.read() as conn:
                return conn.execute("SELECT COUNT(*) FROM media_items").fetchone()[0]
        except sqlite3.Error as e:
            self._fail(ErrorKind.PERSISTENCE, f"Failed to count items: {e}")
            return 0

    def update_sync_status(self, item: MediaItem) -> OperationResult:
        self._ensure_ready()
        if "sync_status" not in self._columns:
            return self._fail(ErrorKind.MIGRATION, "Catalog has no sync_status column; status not saved")
        if item.id is None:
            return self._fail(ErrorKind.PERSISTENCE, f"{item.original_url} has never been saved")

        try:
            with self.db.write() as conn:
                cur = conn.execute(
                    "UPDATE media_items SET sync_status = ? WHERE id = ?",
                    (item.sync_status.value, item.id),
                )
        except sqlite3.Error as e:
            return self._fail(ErrorKind.PERSISTENCE, f"Failed to update sync status of {item.original_url}: {e}")

        if cur.rowcount == 0:
            return self._fail(ErrorKind.PERSISTENCE, f"No catalog row with id {item.id}")
        return OperationResult.success()

    def remove_item(self, item: MediaItem) -> OperationResult:
        self._ensure_ready()
        try:
            with self.db.write() as conn:
                conn.execute("DELETE FROM media_items WHERE url = ?", (str(item.original_url),))
        except sqlite3.Error as e:
            return self._fail(ErrorKind.PERSISTENCE, f"Failed to remove {item.original_url}: {e}")
        item.id = None
        return OperationResult.success()

    def clear_all(self) -> OperationResult:
        """Deletes every item. Watched directories are kept."""
        self._ensure_ready()
        try:
            with self.db.write() as conn:
                cur = conn.execute("DELETE FROM media_items")
        except sqlite3.Error as e:
            return self._fail(ErrorKind.PERSISTENCE, f"Failed to clear catalog: {e}")
        logging.info(f"Cleared {cur.rowcount} items from catalog.")
        return OperationResult.success()

    # --- Directories ---

    def save_directories(self, directories: List[Directory]) -> OperationResult:
        """Replaces the stored directory list. New directories get an id assigned."""
        self._ensure_ready()
        try:
            with self.db.write() as conn:
                conn.execute("DELETE FROM directories")
                ids = []
                for d in directories:
                    # Known ids are reused so items' directory_id stays valid
                    cur = conn.execute(
                        "INSERT INTO directories (id, path, bookmark) VALUES (?, ?, ?)",
                        (d.id, str(d.path), base64.b64encode(d.bookmark).decode("ascii")),
                    )
                    ids.append(cur.lastrowid)
        except sqlite3.Error as e:
            return self._fail(ErrorKind.PERSISTENCE, f"Failed to save directories: {e}")

        for d, new_id in zip(directories, ids):
            d.id = new_id
        return OperationResult.success()

    def load_directories(self) -> List[Directory]:
        self._ensure_ready()
        try:
            with self.db.read() as conn:
                rows = conn.execute("SELECT id, path, bookmark FROM directories ORDER BY id").fetchall()
        except sqlite3.Error as e:
            self._fail(ErrorKind.PERSISTENCE, f"Failed to load directories: {e}")
            return []

        return self._rows_to_directories(rows)

    def snapshot(self) -> Optional[CatalogSnapshot]:
        """
        Every referenced file path plus the watched directories, read in one
        pass. Returns None (not an empty snapshot) when the catalog cannot be
        read, so sweeps never mistake a read error for an empty catalog.
        """
        self._ensure_ready()
        path_cols = [c for c in ("url", "edited_url", "live_video_url") if c in self._columns]
        try:
            with self.db.read() as conn:
                rows = conn.execute(f"SELECT {', '.join(path_cols)} FROM media_items").fetchall()
                dir_rows = conn.execute("SELECT id, path, bookmark FROM directories ORDER BY id").fetchall()
        except sqlite3.Error as e:
            self._fail(ErrorKind.PERSISTENCE, f"Failed to snapshot catalog: {e}")
            return None

        referenced = {row[c] for row in rows for c in path_cols if row[c]}
        return CatalogSnapshot(referenced_paths=referenced, directories=self._rows_to_directories(dir_rows))

    # --- Internals ---

    @staticmethod
    def _rows_to_directories(rows) -> List[Directory]:
        directories = []
        for row in rows:
            dir_id, path, encoded = row["id"], row["path"], row["bookmark"]
            try:
                bookmark = base64.b64decode(encoded or "", validate=True)
            except (binascii.Error, ValueError):
                logging.warning(f"Dropping directory {path}: stored access grant is not valid base64.")
                continue
            directories.append(Directory(path=Path(path), bookmark=bookmark, id=dir_id))
        return directories

    def _ensure_ready(self):
        if self._columns is None:
            self.initialize_schema()
        if self._columns is None:
            # Catalog file could not be opened at all
            self._columns = set()

    def _fail(self, kind: ErrorKind, message: str) -> OperationResult:
        logging.error(message)
        result = OperationResult.failure(kind, message)
        if self.strict:
            result.raise_for_failure()
        return result

    def _select_items(self, sql: str, params: tuple = ()) -> List[MediaItem]:
        self._ensure_ready()
        try:
            with self.db.read() as conn:
                rows = conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            self._fail(ErrorKind.PERSISTENCE, f"Failed to read items: {e}")
            return []

        items = []
        for row in rows:
            item = self._row_to_item(row)
            if item is not None:
                items.append(item)
        return items

    @staticmethod
    def _item_to_row(item: MediaItem) -> Dict[str, Any]:
        meta = item.metadata or MediaMetadata()
        extras = dict(meta.extras)
        if meta.gps and meta.gps.altitude is not None:
            extras["altitude"] = meta.gps.altitude
        width, height = meta.dimensions if meta.dimensions else (None, None)

        return {
            "url": str(item.original_url),
            "type": item.type.value,
            "filename": item.original_url.name,
            "creation_date": _iso(meta.creation_date),
            "modification_date": _iso(meta.modification_date),
            "width": width,
            "height": height,
            "exif_date": _iso(meta.exif_date),
            "latitude": meta.gps.latitude if meta.gps else None,
            "longitude": meta.gps.longitude if meta.gps else None,
            "exif": json.dumps(extras, sort_keys=True, default=str) if extras else None,
            "edited_url": str(item.edited_url) if item.edited_url else None,
            "live_video_url": str(item.live_video_url) if item.live_video_url else None,
            "directory_id": item.directory_id,
            "sync_status": item.sync_status.value,
        }

    @staticmethod
    def _row_to_item(row: sqlite3.Row) -> Optional[MediaItem]:
        keys = set(row.keys())

        def col(name):
            return row[name] if name in keys else None

        try:
            media_type = MediaType(col("type"))
        except ValueError:
            logging.debug(f"Skipping {col('url')}: unknown media type {col('type')!r}")
            return None

        try:
            extras = json.loads(col("exif")) if col("exif") else {}
        except (TypeError, ValueError):
            logging.debug(f"Ignoring unreadable extras for {col('url')}")
            extras = {}
        if not isinstance(extras, dict):
            extras = {}
        altitude = extras.pop("altitude", None)

        gps = None
        if col("latitude") is not None and col("longitude") is not None:
            gps = GPSLocation(latitude=col("latitude"), longitude=col("longitude"), altitude=altitude)

        dimensions = None
        if col("width") is not None and col("height") is not None:
            dimensions = (int(col("width")), int(col("height")))

        try:
            sync_status = SyncStatus(col("sync_status") or SyncStatus.NOT_SYNCED.value)
        except ValueError:
            sync_status = SyncStatus.NOT_SYNCED

        metadata = MediaMetadata(
            creation_date=_parse_iso(col("creation_date")),
            modification_date=_parse_iso(col("modification_date")),
            exif_date=_parse_iso(col("exif_date")),
            dimensions=dimensions,
            gps=gps,
            extras=extras,
        )

        try:
            return MediaItem(
                id=col("id"),
                original_url=Path(col("url")),
                type=media_type,
                edited_url=Path(col("edited_url")) if col("edited_url") else None,
                live_video_url=Path(col("live_video_url")) if col("live_video_url") else None,
                metadata=metadata,
                sync_status=sync_status,
                directory_id=col("directory_id"),
            )
        except ValueError as e:
            logging.warning(f"Skipping inconsistent catalog row {col('id')}: {e}")
            return None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return None
