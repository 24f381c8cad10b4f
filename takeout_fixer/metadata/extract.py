import io
import json
import logging
import subprocess
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

import exifread

from .. import config


@dataclass
class EmbeddedMetadata:
    """What a media file already carries, as read back from its own bytes."""
    capture_time: Optional[datetime] = None     # naive, as written in EXIF
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    description: Optional[str] = None


class MetadataExtractor:
    """
    Reads metadata back out of media bytes.

    Strategies:
      - Images: 'exifread' (fast, Python-native).
      - Video: 'exiftool' (robust, requires system install).

    Used to verify what the injector wrote.
    """

    def __init__(self, exiftool: str = "exiftool"):
        self.exiftool = exiftool

    def read_image(self, data: bytes) -> EmbeddedMetadata:
        # details=False speeds up processing significantly
        tags = exifread.process_file(io.BytesIO(data), details=False)

        meta = EmbeddedMetadata(capture_time=self._parse_exif_date(tags))
        meta.latitude = self._parse_gps(tags, 'GPS GPSLatitude', 'GPS GPSLatitudeRef', 'S')
        meta.longitude = self._parse_gps(tags, 'GPS GPSLongitude', 'GPS GPSLongitudeRef', 'W')
        if 'Image ImageDescription' in tags:
            meta.description = str(tags['Image ImageDescription']).strip() or None
        return meta

    def read_video(self, path: Path) -> EmbeddedMetadata:
        """
        Wraps the 'exiftool' command line utility.
        Must be installed and on the system PATH.
        """
        # -j = JSON output
        # -n = No formatting (decimal GPS, clean dates)
        cmd = [self.exiftool, "-j", "-n", str(path)]
        out = subprocess.check_output(cmd, stderr=subprocess.DEVNULL, text=True,
                                      timeout=config.EXIFTOOL_TIMEOUT)
        data_list = json.loads(out)
        if not data_list:
            return EmbeddedMetadata()

        tags: Dict[str, Any] = data_list[0]
        meta = EmbeddedMetadata()
        for field in ("CreateDate", "DateTimeOriginal", "MediaCreateDate"):
            if tags.get(field):
                meta.capture_time = self._parse_flexible_date(str(tags[field]))
                if meta.capture_time:
                    break

        if "GPSLatitude" in tags and "GPSLongitude" in tags:
            try:
                meta.latitude = float(tags["GPSLatitude"])
                meta.longitude = float(tags["GPSLongitude"])
            except (TypeError, ValueError):
                logging.debug(f"Unparseable GPS in {path}")
        meta.description = tags.get("Description") or None
        return meta

    # --- Internal Parsing Helpers ---

    def _parse_exif_date(self, tags) -> Optional[datetime]:
        """Helper to parse standard EXIF date strings from exifread."""
        for tag in config.DATE_TAGS:
            if tag in tags:
                try:
                    return datetime.strptime(str(tags[tag]).strip(), config.EXIF_DATETIME_FORMAT)
                except ValueError:
                    continue
        return None

    def _parse_gps(self, tags, value_tag: str, ref_tag: str, negative_ref: str) -> Optional[float]:
        if value_tag not in tags:
            return None
        try:
            d, m, s = [r.num / r.den for r in tags[value_tag].values]
        except (ValueError, ZeroDivisionError, AttributeError):
            return None
        decimal = d + m / 60.0 + s / 3600.0
        if ref_tag in tags and str(tags[ref_tag]).strip().upper() == negative_ref:
            decimal = -decimal
        return decimal

    def _parse_flexible_date(self, dt_str: str) -> Optional[datetime]:
        """
        Handles ISO and EXIF-style dates, with or without a UTC suffix.
        Returns a naive datetime object.
        """
        clean = dt_str.replace("UTC", "").strip()
        if clean.endswith("Z"):
            clean = clean[:-1]

        try:
            return datetime.fromisoformat(clean).replace(tzinfo=None)
        except ValueError:
            pass

        try:
            return datetime.strptime(clean.split(".")[0][:19], config.EXIF_DATETIME_FORMAT)
        except ValueError:
            return None
