import json
import logging
import subprocess
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

import exifread
from PIL import Image
from pymediainfo import MediaInfo

from .. import config
from ..models import GPSLocation, MediaMetadata


class MetadataExtractor:
    """
    Best-effort metadata for a single file. `extract` never raises: anything
    unreadable or unparsable is left as None.

    Strategies:
      - Images: 'exifread' for tags, Pillow for the header-only size probe.
      - Video: 'pymediainfo' (container metadata) -> falls back to 'exiftool'.
    """

    def extract(self, path: Path) -> MediaMetadata:
        path = Path(path)
        metadata = MediaMetadata()
        self._read_file_attributes(path, metadata)

        try:
            if config.is_video(path):
                self._read_video(path, metadata)
            else:
                self._read_image(path, metadata)
        except Exception as e:
            logging.warning(f"Metadata extraction failed for {path}: {e}")

        return metadata

    # --- Filesystem ---

    def _read_file_attributes(self, path: Path, metadata: MediaMetadata):
        try:
            st = path.stat()
        except OSError as e:
            logging.debug(f"Cannot stat {path}: {e}")
            return

        # st_birthtime exists on macOS/BSD; Linux only offers ctime
        birthtime = getattr(st, "st_birthtime", None)
        created = birthtime if birthtime else st.st_ctime
        metadata.creation_date = datetime.fromtimestamp(created)
        metadata.modification_date = datetime.fromtimestamp(st.st_mtime)

    # --- Images ---

    def _read_image(self, path: Path, metadata: MediaMetadata):
        try:
            with path.open('rb') as f:
                tags = exifread.process_file(f, details=False)
        except Exception as e:
            logging.warning(f"ExifRead failed for {path}: {e}")
            tags = {}

        metadata.exif_date = self._parse_exif_date(tags)
        metadata.gps = self._parse_gps(tags)
        metadata.dimensions = self._probe_dimensions(path, tags)

        extras: Dict[str, Any] = {
            'make': self._tag_text(tags, 'Image Make'),
            'model': self._tag_text(tags, 'Image Model'),
            'lens': self._tag_text(tags, 'EXIF LensModel'),
            'iso': self._parse_iso(tags),
            'aperture': self._parse_aperture(tags),
            'shutter_speed': self._parse_shutter_speed(tags),
        }
        metadata.extras.update({k: v for k, v in extras.items() if v is not None})

    def _probe_dimensions(self, path: Path, tags) -> Optional[tuple]:
        # Image.open only reads the header; pixel data is decoded lazily
        try:
            with Image.open(path) as im:
                return im.size
        except Exception as e:
            logging.debug(f"Pillow could not read header of {path}: {e}")

        width = self._to_int(self._first_value(tags.get('EXIF ExifImageWidth')))
        height = self._to_int(self._first_value(tags.get('EXIF ExifImageLength')))
        if width and height:
            return width, height
        return None

    def _parse_exif_date(self, tags) -> Optional[datetime]:
        """Parses 'YYYY:MM:DD HH:MM:SS'; zeroed or malformed values give None."""
        for tag in config.DATE_TAGS:
            if tag in tags:
                try:
                    dt = datetime.strptime(str(tags[tag]).strip(), config.EXIF_DATE_FORMAT)
                except ValueError:
                    continue
                if dt.year < 1900:
                    continue
                return dt
        return None

    def _parse_gps(self, tags) -> Optional[GPSLocation]:
        lat = self._dms_to_degrees(tags.get('GPS GPSLatitude'))
        lon = self._dms_to_degrees(tags.get('GPS GPSLongitude'))
        if lat is None or lon is None:
            return None

        lat_ref = str(tags.get('GPS GPSLatitudeRef', 'N')).strip().upper()
        lon_ref = str(tags.get('GPS GPSLongitudeRef', 'E')).strip().upper()
        if lat_ref.startswith('S'):
            lat = -lat
        if lon_ref.startswith('W'):
            lon = -lon

        altitude = self._to_float(self._first_value(tags.get('GPS GPSAltitude')))
        if altitude is not None and self._below_sea_level(tags.get('GPS GPSAltitudeRef')):
            altitude = -altitude

        return GPSLocation(latitude=lat, longitude=lon, altitude=altitude)

    def _dms_to_degrees(self, tag) -> Optional[float]:
        if tag is None:
            return None
        values = getattr(tag, 'values', None) or []
        parts = [self._to_float(v) for v in values[:3]]
        if not parts or any(p is None for p in parts):
            return None
        while len(parts) < 3:
            parts.append(0.0)
        deg, minutes, seconds = parts
        return abs(deg) + minutes / 60.0 + seconds / 3600.0

    def _below_sea_level(self, tag) -> bool:
        if tag is None:
            return False
        ref = self._first_value(tag)
        if ref in (1, b'\x01', '1'):
            return True
        return 'below' in str(tag).lower()

    def _parse_iso(self, tags) -> Optional[int]:
        for name in ('EXIF ISOSpeedRatings', 'EXIF PhotographicSensitivity'):
            iso = self._to_int(self._first_value(tags.get(name)))
            if iso:
                return iso
        return None

    def _parse_aperture(self, tags) -> Optional[float]:
        f_number = self._to_float(self._first_value(tags.get('EXIF FNumber')))
        if f_number:
            return round(f_number, 1)
        # APEX: N = 2^(Av/2)
        apex = self._to_float(self._first_value(tags.get('EXIF ApertureValue')))
        if apex is not None:
            return round(2 ** (apex / 2), 1)
        return None

    def _parse_shutter_speed(self, tags) -> Optional[str]:
        exposure = self._to_float(self._first_value(tags.get('EXIF ExposureTime')))
        if exposure is None:
            # APEX: t = 2^-Tv
            apex = self._to_float(self._first_value(tags.get('EXIF ShutterSpeedValue')))
            if apex is not None:
                exposure = 2 ** -apex
        if not exposure or exposure <= 0:
            return None
        if exposure < 1:
            return f"1/{round(1 / exposure)}"
        return f"{exposure:g}"

    # --- Video ---

    def _read_video(self, path: Path, metadata: MediaMetadata):
        data: Dict[str, Any] = {}

        # Strategy 1: MediaInfo (fast, usually sufficient)
        try:
            data = self._extract_mediainfo(path)
        except Exception as e:
            logging.debug(f"MediaInfo failed for {path}: {e}")

        # Strategy 2: ExifTool (requires system install)
        if not data.get('dt') and not data.get('duration'):
            try:
                data = self._extract_exiftool(path)
            except Exception as e:
                logging.debug(f"ExifTool failed for {path}: {e}")

        metadata.exif_date = data.get('dt')
        if data.get('width') and data.get('height'):
            metadata.dimensions = (int(data['width']), int(data['height']))
        if data.get('duration') is not None:
            metadata.extras['duration'] = data['duration']
        if data.get('camera'):
            metadata.extras['model'] = str(data['camera'])

    def _extract_mediainfo(self, path: Path) -> Dict[str, Any]:
        mi = MediaInfo.parse(str(path))
        data: Dict[str, Any] = {'dt': None, 'duration': None, 'camera': None, 'width': None, 'height': None}

        for track in mi.tracks:
            if track.track_type == "General":
                if getattr(track, "duration", None):
                    # MediaInfo duration is in milliseconds
                    data['duration'] = float(track.duration) / 1000.0

                for field in ("recorded_date", "encoded_date", "tagged_date"):
                    val = getattr(track, field, None)
                    if val:
                        dt = self._parse_flexible_date(str(val))
                        if dt:
                            data['dt'] = dt
                            break

                data['camera'] = (
                    getattr(track, "performer", None) or
                    getattr(track, "device_model", None)
                )
            elif track.track_type == "Video" and data['width'] is None:
                data['width'] = self._to_int(getattr(track, "width", None))
                data['height'] = self._to_int(getattr(track, "height", None))
        return data

    def _extract_exiftool(self, path: Path) -> Dict[str, Any]:
        # -j = JSON output, -n = raw numbers (seconds as float)
        cmd = ["exiftool", "-j", "-n", str(path)]
        out = subprocess.check_output(cmd, stderr=subprocess.DEVNULL, text=True)
        data_list = json.loads(out)

        data: Dict[str, Any] = {'dt': None, 'duration': None, 'camera': None, 'width': None, 'height': None}
        if not data_list:
            return data
        tags = data_list[0]

        for field in ("CreateDate", "CreationDate", "DateTimeOriginal", "MediaCreateDate"):
            if tags.get(field):
                dt = self._parse_flexible_date(str(tags[field]))
                if dt:
                    data['dt'] = dt
                    break

        data['duration'] = self._to_float(tags.get("Duration"))
        data['width'] = self._to_int(tags.get("ImageWidth"))
        data['height'] = self._to_int(tags.get("ImageHeight"))
        data['camera'] = tags.get("Model") or tags.get("Make")
        return data

    def _parse_flexible_date(self, dt_str: str) -> Optional[datetime]:
        """
        Handles ISO, 'UTC'-suffixed and EXIF-style dates.
        Returns a naive datetime object.
        """
        if not dt_str:
            return None
        clean = dt_str.replace("UTC", "").strip()

        try:
            return datetime.fromisoformat(clean).replace(tzinfo=None)
        except ValueError:
            pass

        try:
            clean_exif = clean.replace(":", "-", 2)
            if "." in clean_exif:
                clean_exif = clean_exif.split(".")[0]
            return datetime.strptime(clean_exif, "%Y-%m-%d %H:%M:%S")
        except ValueError:
            pass

        return None

    # --- Tag helpers ---

    @staticmethod
    def _tag_text(tags, name: str) -> Optional[str]:
        if name not in tags:
            return None
        text = str(tags[name]).strip().strip('\x00')
        return text or None

    @staticmethod
    def _first_value(tag) -> Any:
        if tag is None:
            return None
        values = getattr(tag, 'values', tag)
        if isinstance(values, (list, tuple)):
            return values[0] if values else None
        return values

    @staticmethod
    def _to_float(value) -> Optional[float]:
        if value is None:
            return None
        try:
            return float(value)
        except (TypeError, ValueError, ZeroDivisionError):
            pass
        # Older exifread Ratio objects only expose num/den
        num = getattr(value, 'num', None)
        den = getattr(value, 'den', None)
        if num is None or not den:
            return None
        return num / den

    @classmethod
    def _to_int(cls, value) -> Optional[int]:
        f = cls._to_float(value)
        return int(f) if f is not None else None
