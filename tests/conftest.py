import os
import pytest
from datetime import datetime
from pathlib import Path
from PIL import Image
from media_browser.database.db import DBManager
from media_browser.database.ops import CatalogStore


def _set_mtime(path: Path, when: datetime):
    ts = when.timestamp()
    os.utime(path, (ts, ts))


@pytest.fixture
def catalog():
    """Returns a CatalogStore attached to an in-memory DB."""
    store = CatalogStore(DBManager(":memory:"))
    store.initialize_schema()
    try:
        yield store
    finally:
        store.close()


@pytest.fixture
def make_jpeg():
    """Writes a small solid-colour JPEG; optional mtime and EXIF block."""
    def _make(path: Path, size=(64, 48), color=(200, 30, 30), mtime: datetime = None, exif=None) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        img = Image.new("RGB", size, color)
        if exif is not None:
            img.save(path, format="JPEG", exif=exif)
        else:
            img.save(path, format="JPEG")
        if mtime is not None:
            _set_mtime(path, mtime)
        return path
    return _make


@pytest.fixture
def make_file():
    """Writes arbitrary bytes (content is irrelevant to the test) with an optional mtime."""
    def _make(path: Path, data: bytes = b"not really media", mtime: datetime = None) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        if mtime is not None:
            _set_mtime(path, mtime)
        return path
    return _make
