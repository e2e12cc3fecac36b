import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional

from . import config
from .core import MediaBrowserApp
from .importing.local_files import TqdmProgress
from .models import SyncStatus, filter_items


def setup_logging(log_dir: Path, verbose: bool):
    """Sets up logging to both console and a file in the support directory."""
    log_level = logging.DEBUG if verbose else logging.INFO

    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / config.LOG_FILENAME

    logging.basicConfig(
        level=log_level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=[
            logging.FileHandler(log_file, encoding='utf-8'),
            logging.StreamHandler(sys.stdout)
        ]
    )

    # Silence chatty libraries
    logging.getLogger("exifread").setLevel(logging.ERROR)
    logging.getLogger("PIL").setLevel(logging.WARNING)


def parse_args(argv: Optional[List[str]] = None):
    p = argparse.ArgumentParser(description="Media Browser: index, preview and import local photos and videos")

    p.add_argument("--db", type=Path, default=None, help="Catalog database (default: <support dir>/media.db)")
    p.add_argument("--cache-dir", type=Path, default=None, help="Thumbnail cache directory")
    p.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    sub = p.add_subparsers(dest="command", required=True)

    scan = sub.add_parser("scan", help="Watch directories and index them into the catalog")
    scan.add_argument("dirs", type=Path, nargs="*", help="Directories to add (default: rescan watched ones)")
    scan.add_argument("--rebuild", action="store_true", help="Clear the catalog before scanning")

    ls = sub.add_parser("list", help="List catalog items")
    ls.add_argument("--query", default="", help="Filter by name, extension, camera make or model")

    imp = sub.add_parser("import", help="Copy media into a date-sharded library")
    imp.add_argument("src", type=Path, help="Source directory")
    imp.add_argument("dest", type=Path, help="Destination library root")

    sub.add_parser("cleanup-thumbnails", help="Remove cached thumbnails whose source is gone")

    status = sub.add_parser("set-sync-status", help="Record the sync state of an item")
    status.add_argument("path", type=Path, help="Primary file of the item")
    status.add_argument("status", choices=[s.value for s in SyncStatus])

    return p.parse_args(argv)


def cmd_scan(app: MediaBrowserApp, args) -> int:
    for d in args.dirs:
        if app.directories.add(d) is None:
            logging.error(f"Could not watch {d}")
            return 1
    items = app.scan(rebuild=args.rebuild)
    logging.info(f"Catalog holds {app.catalog.item_count()} items ({len(items)} seen this scan).")
    return 0


def cmd_list(app: MediaBrowserApp, args) -> int:
    items = filter_items(app.catalog.all_items(), args.query)
    for item in items:
        dt = item.best_date()
        when = dt.strftime("%Y-%m-%d %H:%M") if dt else "----------------"
        print(f"{item.id:>6}  {when}  {item.type.value:<9}  {item.sync_status.value:<14}  {item.original_url}")
    return 0


def cmd_import(app: MediaBrowserApp, args) -> int:
    src_root = args.src.resolve()
    dest_root = args.dest.resolve()

    found = []
    asyncio.run(app.importer.preview(src_root, found.append))
    if not found:
        logging.info("No importable media found.")
        return 0

    progress = TqdmProgress(total=len(found))
    try:
        report = asyncio.run(app.importer.import_items(found, src_root, dest_root, progress))
    finally:
        progress.close()
    return 1 if report.failed else 0


def cmd_cleanup(app: MediaBrowserApp, args) -> int:
    removed = app.thumbnails.cleanup_dangling_thumbnails(app.catalog)
    print(f"Removed {removed} dangling thumbnails.")
    return 0


def cmd_set_sync_status(app: MediaBrowserApp, args) -> int:
    item = app.catalog.get_item(args.path.resolve())
    if item is None:
        logging.error(f"{args.path} is not in the catalog.")
        return 1
    item.sync_status = SyncStatus(args.status)
    return 0 if app.catalog.update_sync_status(item) else 1


COMMANDS = {
    "scan": cmd_scan,
    "list": cmd_list,
    "import": cmd_import,
    "cleanup-thumbnails": cmd_cleanup,
    "set-sync-status": cmd_set_sync_status,
}


def main(argv: Optional[List[str]] = None):
    args = parse_args(argv)

    setup_logging(config.app_support_dir(), args.verbose)
    logging.debug(f"=== Media Browser: {args.command} ===")

    app = MediaBrowserApp(db_path=args.db, cache_dir=args.cache_dir)
    try:
        code = COMMANDS[args.command](app, args)
    except KeyboardInterrupt:
        logging.warning("Operation cancelled by user.")
        code = 1
    except Exception:
        logging.exception(f"Fatal error during {args.command}.")
        code = 1
    finally:
        app.close()

    sys.exit(code)


if __name__ == "__main__":
    main()
