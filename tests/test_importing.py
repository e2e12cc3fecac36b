import asyncio
import os
import pytest
from datetime import datetime
from pathlib import Path
from media_browser.importing.local_files import ImportOrchestrator
from media_browser.metadata.grouping import MediaGrouper
from media_browser.models import MediaItem, MediaMetadata, MediaType
from media_browser.thumbnails.cache import ThumbnailCache


class RecordingProgress:
    def __init__(self):
        self.events = []

    def item_started(self, item):
        self.events.append(("start", item.display_name))

    def item_completed(self, item, copied):
        self.events.append(("done", item.display_name, [p.name for p in copied]))


@pytest.fixture
def importer(tmp_path):
    thumbs = ThumbnailCache(tmp_path / "thumbs")
    try:
        yield ImportOrchestrator(thumbs, grouper=MediaGrouper(extract_metadata=False))
    finally:
        thumbs.close()


def _dated(path, when, **kwargs):
    return MediaItem(original_url=path, metadata=MediaMetadata(exif_date=when), **kwargs)


def test_import_shards_by_capture_date(importer, make_file, tmp_path):
    src = tmp_path / "src"
    still = make_file(src / "IMG_001.JPG", b"still")
    video = make_file(src / "IMG_001.MOV", b"motion")
    item = _dated(still, datetime(2023, 5, 17, 9, 30), type=MediaType.LIVE_PHOTO, live_video_url=video)

    dest = tmp_path / "library"
    report = asyncio.run(importer.import_items([item], src, dest))

    shard = dest / "2023" / "05" / "17"
    assert (shard / "IMG_001.JPG").read_bytes() == b"still"
    assert (shard / "IMG_001.MOV").read_bytes() == b"motion"
    assert len(report.copied) == 2
    assert not list(shard.glob(".*.part"))


def test_date_shard_falls_back_to_file_time(make_file, tmp_path):
    path = make_file(tmp_path / "undated.jpg", mtime=datetime(2021, 3, 4, 12, 0))
    item = MediaItem(original_url=path, type=MediaType.PHOTO)
    assert ImportOrchestrator.date_shard(item) == Path("2021/03/04")


def test_vanished_file_is_skipped(importer, make_file, tmp_path):
    src = tmp_path / "src"
    gone = make_file(src / "gone.jpg")
    kept = make_file(src / "kept.jpg")
    items = [_dated(gone, datetime(2020, 1, 1), type=MediaType.PHOTO),
             _dated(kept, datetime(2020, 1, 1), type=MediaType.PHOTO)]
    gone.unlink()

    report = asyncio.run(importer.import_items(items, src, tmp_path / "dest"))

    assert report.skipped == [gone]
    assert [p.name for p in report.copied] == ["kept.jpg"]


def test_existing_destination_not_overwritten(importer, make_file, tmp_path):
    src = make_file(tmp_path / "src" / "a.jpg", b"new")
    existing = make_file(tmp_path / "dest" / "2020" / "01" / "01" / "a.jpg", b"old")

    report = asyncio.run(importer.import_items(
        [_dated(src, datetime(2020, 1, 1), type=MediaType.PHOTO)], tmp_path / "src", tmp_path / "dest"
    ))

    assert existing.read_bytes() == b"old"
    assert report.skipped == [src]


def test_copy_failure_does_not_stop_batch(importer, make_file, tmp_path, monkeypatch):
    src = tmp_path / "src"
    bad = make_file(src / "bad.jpg")
    good = make_file(src / "good.jpg")
    real_copy = importer._copy_file

    def flaky(path, shard):
        if path.name == "bad.jpg":
            raise PermissionError("denied")
        return real_copy(path, shard)

    monkeypatch.setattr(importer, "_copy_file", flaky)
    items = [_dated(p, datetime(2022, 2, 2), type=MediaType.PHOTO) for p in (bad, good)]

    report = asyncio.run(importer.import_items(items, src, tmp_path / "dest"))

    assert report.failed == [bad]
    assert (tmp_path / "dest" / "2022" / "02" / "02" / "good.jpg").exists()


def test_progress_events(importer, make_file, tmp_path):
    src = tmp_path / "src"
    items = [_dated(make_file(src / n), datetime(2020, 6, 1), type=MediaType.PHOTO) for n in ("a.jpg", "b.jpg")]
    progress = RecordingProgress()

    asyncio.run(importer.import_items(items, src, tmp_path / "dest", progress))

    assert progress.events == [
        ("start", "a.jpg"), ("done", "a.jpg", ["a.jpg"]),
        ("start", "b.jpg"), ("done", "b.jpg", ["b.jpg"]),
    ]


def test_relative_paths_resolved_against_source(importer, make_file, tmp_path):
    src = tmp_path / "src"
    make_file(src / "rel.jpg", b"data")
    item = _dated(Path("rel.jpg"), datetime(2019, 9, 9), type=MediaType.PHOTO)

    asyncio.run(importer.import_items([item], src, tmp_path / "dest"))
    assert (tmp_path / "dest" / "2019" / "09" / "09" / "rel.jpg").read_bytes() == b"data"


def test_preview_reports_only_thumbnailable_items(importer, make_jpeg, make_file, tmp_path):
    src = tmp_path / "src"
    make_jpeg(src / "good.jpg")
    make_jpeg(src / "nested" / "deep.jpg")
    make_file(src / "bad.jpg", b"garbage")
    make_jpeg(src / ".hidden.jpg")
    make_file(src / "notes.txt", b"text")

    found = []
    result = asyncio.run(importer.preview(src, found.append))

    assert sorted(i.original_url.name for i in found) == ["deep.jpg", "good.jpg"]
    assert result == found


def test_preview_callbacks_go_through_dispatcher(tmp_path, make_jpeg):
    make_jpeg(tmp_path / "src" / "one.jpg")
    scheduled = []
    thumbs = ThumbnailCache(tmp_path / "thumbs")
    importer = ImportOrchestrator(thumbs, grouper=MediaGrouper(extract_metadata=False), dispatch=scheduled.append)

    found = []
    asyncio.run(importer.preview(tmp_path / "src", found.append))
    thumbs.close()

    assert found == []
    assert len(scheduled) == 1
    scheduled[0]()
    assert [i.original_url.name for i in found] == ["one.jpg"]


def test_undated_relative_item_uses_source_file_time(importer, make_file, tmp_path):
    src = tmp_path / "src"
    make_file(src / "old.jpg", b"data", mtime=datetime(2021, 3, 4, 12, 0))
    item = MediaItem(original_url=Path("old.jpg"), type=MediaType.PHOTO)

    assert ImportOrchestrator.date_shard(item, src) == Path("2021/03/04")

    asyncio.run(importer.import_items([item], src, tmp_path / "dest"))
    assert (tmp_path / "dest" / "2021" / "03" / "04" / "old.jpg").read_bytes() == b"data"


def test_cancelled_preview_stops_walk(importer, make_jpeg, tmp_path):
    src = tmp_path / "src"
    for name in ("a", "b", "c"):
        make_jpeg(src / name / f"{name}.jpg")
    found = []

    async def run():
        task = None

        def on_found(item):
            found.append(item)
            task.cancel()

        task = asyncio.ensure_future(importer.preview(src, on_found))
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(run())
    assert len(found) == 1


def test_cancelled_import_leaves_no_partial_files(importer, make_file, tmp_path):
    src = tmp_path / "src"
    payload = os.urandom(3 * 1024 * 1024)
    items = [_dated(make_file(src / f"clip_{n}.mov", payload), datetime(2020, 1, n + 1), type=MediaType.VIDEO)
             for n in range(4)]
    dest = tmp_path / "dest"

    class CancelAfterFirst(RecordingProgress):
        task = None

        def item_completed(self, item, copied):
            super().item_completed(item, copied)
            self.task.cancel()

    progress = CancelAfterFirst()

    async def run():
        progress.task = asyncio.ensure_future(importer.import_items(items, src, dest, progress))
        with pytest.raises(asyncio.CancelledError):
            await progress.task

    asyncio.run(run())

    assert [e for e in progress.events if e[0] == "done"] == [("done", "clip_0.mov", ["clip_0.mov"])]
    assert not list(dest.rglob(".*.part"))
    landed = list(dest.rglob("*.mov"))
    assert 1 <= len(landed) <= 2
    assert all(p.read_bytes() == payload for p in landed)
