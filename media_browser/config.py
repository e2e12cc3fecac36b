"""
Configuration constants for the media browser.
"""
import os
from pathlib import Path

# --- File Type Definitions ---
IMAGE_EXTS = {
    # Standard image formats
    '.jpg', '.jpeg', '.png', '.tiff', '.tif', '.gif', '.bmp', '.heic', '.heif',
    '.webp', '.svg', '.icns', '.psd', '.ico',
    # Camera RAW formats
    '.cr2', '.crw', '.nef', '.nrw', '.arw', '.srf', '.rw2', '.rwl', '.raf',
    '.orf', '.ori', '.pef', '.dng', '.3fr', '.fff', '.iiq', '.mos', '.dcr',
    '.kdc', '.x3f', '.erf', '.mef', '.mrw', '.srw',
}
VIDEO_EXTS = {
    '.mp4', '.avi', '.mov', '.m4v', '.mpg', '.mpeg', '.3gp', '.3g2', '.dv',
    '.flc', '.m2ts', '.mts', '.mkv', '.webm', '.wmv', '.asf', '.rm', '.divx',
    '.xvid', '.ogv', '.vob',
}

# --- Grouping ---
# Markers that identify an edited variant of an original capture.
# Applied to the stem (extension already removed), case-insensitive.
EDIT_SUFFIX_PATTERNS = [
    r'[-_ ]edited$',
    r' \(edited\)$',
]
# iOS writes edits as IMG_E1234 next to IMG_1234
EDIT_INFIX_PATTERN = r'^(?P<prefix>.*_)e(?P<digits>\d+)$'

# --- Metadata Parsing ---
EXIF_DATE_FORMAT = "%Y:%m:%d %H:%M:%S"
DATE_TAGS = [
    'EXIF DateTimeOriginal',
    'EXIF DateTimeDigitized',
    'Image DateTime',
]

# --- Thumbnails ---
# Size classes are coarse buckets (longest edge in pixels).
THUMBNAIL_SIZE_CLASSES = {
    'small': 128,
    'medium': 256,
    'large': 512,
}
THUMBNAIL_EXTENSION = ".jpg"
THUMBNAIL_JPEG_QUALITY = 85
THUMBNAIL_MEMORY_ENTRIES = 512  # decoded thumbnails kept in RAM
THUMBNAIL_WORKERS = 4

# --- Import ---
COPY_CHUNK_SIZE = 1024 * 1024  # 1 MB
DATE_SHARD_PATTERN = "{year:04d}/{month:02d}/{day:02d}"

# --- Locations ---
APP_NAME = "media-browser"
DB_FILENAME = "media.db"
LOG_FILENAME = "media_browser.log"


def app_support_dir() -> Path:
    """Per-application support directory holding the catalog database."""
    override = os.environ.get("MEDIA_BROWSER_HOME")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".local" / "share" / APP_NAME


def default_db_path() -> Path:
    return app_support_dir() / DB_FILENAME


def default_thumbnail_dir() -> Path:
    override = os.environ.get("MEDIA_BROWSER_CACHE")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".cache" / APP_NAME / "thumbnails"


def is_image(path: Path) -> bool:
    return Path(path).suffix.lower() in IMAGE_EXTS


def is_video(path: Path) -> bool:
    return Path(path).suffix.lower() in VIDEO_EXTS


def is_media(path: Path) -> bool:
    return is_image(path) or is_video(path)
