import sqlite3
import threading
import time
import pytest
from datetime import datetime
from pathlib import Path
from media_browser.database import schema
from media_browser.database import db as db_mod
from media_browser.database.db import DBManager
from media_browser.database.ops import CatalogStore
from media_browser.exceptions import CatalogError, ErrorKind
from media_browser.models import Directory, GPSLocation, MediaItem, MediaMetadata, MediaType, SyncStatus

LEGACY_TABLE = """
CREATE TABLE media_items (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    url TEXT UNIQUE,
    type TEXT,
    filename TEXT,
    creation_date TEXT,
    modification_date TEXT,
    width REAL,
    height REAL,
    exif_date TEXT,
    latitude REAL,
    longitude REAL,
    exif TEXT
)
"""


def _photo(path: str, **meta) -> MediaItem:
    return MediaItem(original_url=Path(path), type=MediaType.PHOTO, metadata=MediaMetadata(**meta))


def _legacy_db(path: Path):
    conn = sqlite3.connect(path)
    conn.execute(LEGACY_TABLE)
    conn.execute(
        "INSERT INTO media_items (url, type, filename, exif_date, width, height, exif) VALUES (?, ?, ?, ?, ?, ?, ?)",
        ("/photos/old.jpg", "photo", "old.jpg", "2019-07-01T12:00:00", 4000, 3000, '{"make": "Canon"}'),
    )
    conn.commit()
    conn.close()


def test_upsert_same_url_keeps_one_row(catalog):
    """Re-inserting a path replaces the row and keeps the last-written values."""
    catalog.upsert_item(_photo("/p/a.jpg", exif_date=datetime(2020, 1, 1)))
    catalog.upsert_item(_photo("/p/a.jpg", exif_date=datetime(2021, 2, 2)))
    catalog.upsert_item(_photo("/p/a.jpg", exif_date=datetime(2022, 3, 3), dimensions=(10, 20)))

    items = catalog.all_items()
    assert len(items) == 1
    assert items[0].metadata.exif_date == datetime(2022, 3, 3)
    assert items[0].metadata.dimensions == (10, 20)


def test_upsert_keeps_id_stable(catalog):
    first = _photo("/p/a.jpg")
    assert catalog.upsert_item(first)
    original_id = first.id
    assert original_id is not None

    again = _photo("/p/a.jpg")
    catalog.upsert_item(again)
    assert again.id == original_id


def test_all_items_round_trips_metadata(catalog):
    meta = MediaMetadata(
        creation_date=datetime(2023, 5, 17, 8, 0),
        modification_date=datetime(2023, 5, 18, 9, 30),
        exif_date=datetime(2023, 5, 17, 7, 59, 58),
        dimensions=(4032, 3024),
        gps=GPSLocation(latitude=-33.86, longitude=151.21, altitude=-12.5),
        extras={"make": "Apple", "model": "iPhone 13", "iso": 50, "aperture": 1.6, "shutter_speed": "1/120"},
    )
    item = MediaItem(
        original_url=Path("/p/IMG_1.HEIC"),
        type=MediaType.LIVE_PHOTO,
        edited_url=Path("/p/IMG_E1.HEIC"),
        live_video_url=Path("/p/IMG_1.MOV"),
        metadata=meta,
        sync_status=SyncStatus.SYNCED,
        directory_id=7,
    )
    catalog.upsert_item(item)

    loaded = catalog.get_item(Path("/p/IMG_1.HEIC"))
    assert loaded.type is MediaType.LIVE_PHOTO
    assert loaded.edited_url == Path("/p/IMG_E1.HEIC")
    assert loaded.live_video_url == Path("/p/IMG_1.MOV")
    assert loaded.sync_status is SyncStatus.SYNCED
    assert loaded.directory_id == 7
    assert loaded.metadata.gps == GPSLocation(-33.86, 151.21, -12.5)
    assert loaded.metadata.extras == meta.extras
    assert loaded.metadata.exif_date == meta.exif_date
    assert loaded.metadata.dimensions == (4032, 3024)


def test_unknown_type_rows_are_skipped(catalog):
    catalog.upsert_item(_photo("/p/good.jpg"))
    with catalog.db.write() as conn:
        conn.execute("INSERT INTO media_items (url, type, filename) VALUES ('/p/odd.xyz', 'hologram', 'odd.xyz')")

    items = catalog.all_items()
    assert [i.original_url for i in items] == [Path("/p/good.jpg")]
    assert catalog.item_count() == 2


def test_update_sync_status(catalog):
    item = _photo("/p/a.jpg")
    catalog.upsert_item(item)

    item.sync_status = SyncStatus.SYNCING
    assert catalog.update_sync_status(item)
    assert catalog.get_item(Path("/p/a.jpg")).sync_status is SyncStatus.SYNCING


def test_update_sync_status_unsaved_item_has_no_effect(catalog):
    result = catalog.update_sync_status(_photo("/p/never.jpg"))
    assert not result
    assert result.kind is ErrorKind.PERSISTENCE


def test_strict_store_raises(catalog):
    strict = CatalogStore(catalog.db, strict=True)
    with pytest.raises(CatalogError) as exc:
        strict.update_sync_status(_photo("/p/never.jpg"))
    assert exc.value.kind is ErrorKind.PERSISTENCE


def test_remove_item_and_directory_lookup(catalog):
    a = _photo("/p/a.jpg")
    a.directory_id = 1
    b = _photo("/p/b.jpg")
    b.directory_id = 2
    catalog.upsert_item(a)
    catalog.upsert_item(b)

    assert [i.original_url for i in catalog.items_for_directory(2)] == [Path("/p/b.jpg")]

    assert catalog.remove_item(a)
    assert catalog.get_item(Path("/p/a.jpg")) is None
    assert catalog.item_count() == 1


def test_clear_all_keeps_directories(catalog):
    catalog.upsert_item(_photo("/p/a.jpg"))
    catalog.save_directories([Directory(path=Path("/p"), bookmark=b"\x00grant\xff")])

    assert catalog.clear_all()
    assert catalog.all_items() == []
    assert [d.path for d in catalog.load_directories()] == [Path("/p")]


def test_directories_full_replace_and_token_round_trip(catalog):
    first = [Directory(path=Path("/a"), bookmark=b"\x01\x02"), Directory(path=Path("/b"), bookmark=b"")]
    catalog.save_directories(first)
    assert all(d.id is not None for d in first)

    second = [first[1], Directory(path=Path("/c"), bookmark=bytes(range(256)))]
    catalog.save_directories(second)

    loaded = catalog.load_directories()
    assert [d.path for d in loaded] == [Path("/b"), Path("/c")]
    assert loaded[0].id == first[1].id
    assert loaded[1].bookmark == bytes(range(256))


def test_undecodable_token_is_dropped(catalog):
    with catalog.db.write() as conn:
        conn.execute("INSERT INTO directories (path, bookmark) VALUES ('/broken', '***not base64***')")
        conn.execute("INSERT INTO directories (path, bookmark) VALUES ('/fine', 'Zm9v')")

    loaded = catalog.load_directories()
    assert [(d.path, d.bookmark) for d in loaded] == [(Path("/fine"), b"foo")]


def test_migration_adds_sync_status_idempotently(tmp_path):
    db_path = tmp_path / "media.db"
    _legacy_db(db_path)

    for _ in range(2):
        store = CatalogStore.open(db_path)
        assert not store.degraded
        assert "sync_status" in schema.item_columns(store.db.connect())

        items = store.all_items()
        assert len(items) == 1
        old = items[0]
        assert old.original_url == Path("/photos/old.jpg")
        assert old.metadata.exif_date == datetime(2019, 7, 1, 12, 0)
        assert old.metadata.dimensions == (4000, 3000)
        assert old.metadata.make == "Canon"
        assert old.sync_status is SyncStatus.NOT_SYNCED
        store.close()

    conn = sqlite3.connect(db_path)
    assert conn.execute("SELECT MAX(version) FROM schema_version").fetchone()[0] == schema.CURRENT_SCHEMA_VERSION
    conn.close()


def test_failed_migration_leaves_store_usable(tmp_path, monkeypatch):
    db_path = tmp_path / "media.db"
    _legacy_db(db_path)
    # NOT NULL without a default cannot be added to an existing table
    monkeypatch.setattr(schema, "MIGRATIONS", [("sync_status", "TEXT NOT NULL", 3)])

    store = CatalogStore(DBManager(db_path))
    result = store.initialize_schema()
    assert not result
    assert result.kind is ErrorKind.MIGRATION
    assert store.degraded

    item = _photo("/photos/new.jpg", exif_date=datetime(2024, 1, 1))
    assert store.upsert_item(item)
    assert {i.original_url for i in store.all_items()} == {Path("/photos/old.jpg"), Path("/photos/new.jpg")}
    assert all(i.sync_status is SyncStatus.NOT_SYNCED for i in store.all_items())

    item.sync_status = SyncStatus.SYNCED
    status = store.update_sync_status(item)
    assert status.kind is ErrorKind.MIGRATION
    store.close()


def test_concurrent_upserts_single_row(tmp_path):
    store = CatalogStore.open(tmp_path / "media.db")

    def worker(n):
        for i in range(20):
            store.upsert_item(_photo("/p/shared.jpg", extras={"writer": n, "round": i}))

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert store.item_count() == 1
    assert store.all_items()[0].metadata.extras["round"] == 19
    store.close()


def test_snapshot_lists_companion_paths(catalog):
    item = MediaItem(
        original_url=Path("/p/IMG_1.JPG"),
        type=MediaType.LIVE_PHOTO,
        live_video_url=Path("/p/IMG_1.MOV"),
    )
    catalog.upsert_item(item)
    catalog.save_directories([Directory(path=Path("/p"), bookmark=b"t")])

    snap = catalog.snapshot()
    assert snap.referenced_paths == {"/p/IMG_1.JPG", "/p/IMG_1.MOV"}
    assert [d.path for d in snap.directories] == [Path("/p")]


def test_concurrent_first_access_applies_schema_once(tmp_path, monkeypatch):
    store = CatalogStore(DBManager(tmp_path / "media.db"))
    real_init = db_mod.init_schema
    applied = []

    def slow_init(conn):
        applied.append(threading.get_ident())
        time.sleep(0.05)
        return real_init(conn)

    monkeypatch.setattr(db_mod, "init_schema", slow_init)
    barrier = threading.Barrier(8)
    results = []

    def worker():
        barrier.wait()
        results.append(store.initialize_schema())

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(applied) == 1
    assert len(results) == 8 and all(results)
    assert store.upsert_item(_photo("/p/a.jpg"))
    store.close()
