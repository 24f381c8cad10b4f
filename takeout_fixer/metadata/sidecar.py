import json
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from ..exceptions import SidecarParseError
from ..models import Entry, GeoLocation, MetadataRecord

# Keys the exporter is known to write; anything else is logged once per run
KNOWN_KEYS = {
    'title', 'description', 'imageViews', 'creationTime', 'photoTakenTime',
    'geoData', 'geoDataExif', 'url', 'googlePhotosOrigin', 'people',
    'enrichments', 'favorited', 'archived', 'trashed', 'appSource',
    'photoLastModifiedTime', 'modificationTime',
}


class SidecarParser:
    """
    Reads the exporter's per-file JSON into a MetadataRecord.

    Field mapping:
      - photoTakenTime.timestamp (Unix seconds, usually a string) -> capture_time (UTC)
      - geoData, else geoDataExif, ignoring (0, 0)                 -> location
      - description (non-empty)                                    -> description
      - title                                                      -> title hint

    A broken document never raises from parse(); it yields a partial record
    listing what went wrong.
    """

    def __init__(self):
        self._unknown_seen = set()
        self._lock = threading.Lock()

    def parse(self, entry: Entry) -> MetadataRecord:
        """Reads and parses a sidecar entry. VolumeError from the archive propagates."""
        with entry.open() as stream:
            data = stream.read()
        return self.parse_bytes(data, entry.relative_path)

    def parse_bytes(self, data: bytes, source_path: str) -> MetadataRecord:
        try:
            doc = self.load_document(data)
        except SidecarParseError as e:
            logging.warning(f"Unreadable sidecar {source_path}: {e}")
            return MetadataRecord(source_path=source_path, partial=True, problems=(str(e),))

        problems: List[str] = []
        self._note_unknown_keys(doc)

        capture_time = self._parse_timestamp(doc.get('photoTakenTime'), problems)
        location = self._parse_location(doc, problems)

        description = doc.get('description')
        if not isinstance(description, str) or not description.strip():
            description = None

        title = doc.get('title')
        if not isinstance(title, str) or not title:
            title = None

        partial = capture_time is None
        if problems:
            logging.debug(f"Sidecar {source_path}: {'; '.join(problems)}")

        return MetadataRecord(
            source_path=source_path,
            capture_time=capture_time,
            location=location,
            description=description,
            title=title,
            partial=partial,
            problems=tuple(problems),
        )

    def read_title(self, entry: Entry) -> Optional[str]:
        """Declared original filename of a sidecar, used to settle ambiguous matches."""
        with entry.open() as stream:
            doc = self.load_document(stream.read())
        title = doc.get('title')
        return title if isinstance(title, str) and title else None

    @staticmethod
    def load_document(data: bytes) -> Dict[str, Any]:
        try:
            doc = json.loads(data.decode('utf-8-sig'))
        except UnicodeDecodeError as e:
            raise SidecarParseError(f"not UTF-8: {e}") from e
        except json.JSONDecodeError as e:
            raise SidecarParseError(f"malformed JSON: {e}") from e

        if not isinstance(doc, dict):
            raise SidecarParseError(f"expected a JSON object, got {type(doc).__name__}")
        return doc

    # --- Field Parsers ---

    def _parse_timestamp(self, value: Any, problems: List[str]) -> Optional[datetime]:
        if value is None:
            problems.append("missing photoTakenTime")
            return None

        raw = value.get('timestamp') if isinstance(value, dict) else None
        if raw is None or isinstance(raw, bool):
            problems.append("photoTakenTime has no timestamp")
            return None

        try:
            seconds = int(raw)
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (TypeError, ValueError, OverflowError, OSError):
            problems.append(f"invalid photoTakenTime timestamp {raw!r}")
            return None

    def _parse_location(self, doc: Dict[str, Any], problems: List[str]) -> Optional[GeoLocation]:
        for key in ('geoData', 'geoDataExif'):
            geo = self._parse_geo(doc.get(key), key, problems)
            if geo is not None:
                return geo
        return None

    def _parse_geo(self, value: Any, key: str, problems: List[str]) -> Optional[GeoLocation]:
        if value is None:
            return None
        if not isinstance(value, dict):
            problems.append(f"{key} is not an object")
            return None

        try:
            lat = float(value.get('latitude', 0.0))
            lon = float(value.get('longitude', 0.0))
            alt = float(value.get('altitude', 0.0) or 0.0)
        except (TypeError, ValueError):
            problems.append(f"{key} has non-numeric coordinates")
            return None

        # (0, 0) is the exporter's "no location"
        if lat == 0.0 and lon == 0.0:
            return None
        if not (-90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0):
            problems.append(f"{key} out of range ({lat}, {lon})")
            return None
        return GeoLocation(latitude=lat, longitude=lon, altitude=alt)

    def _note_unknown_keys(self, doc: Dict[str, Any]):
        with self._lock:
            unknown = set(doc) - KNOWN_KEYS - self._unknown_seen
            self._unknown_seen |= unknown
        if unknown:
            logging.info(f"Ignoring unrecognized sidecar field(s): {', '.join(sorted(unknown))}")
