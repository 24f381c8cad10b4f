import logging
import unicodedata
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Dict, Iterator, List, Mapping, Optional, Tuple

from .. import config
from ..exceptions import CatalogError, VolumeError
from ..matching.naming import NameNormalizer
from ..models import Entry, NormalizedKey, VolumeFault
from .sources import ArchiveEntrySource


def media_root_prefix(media_root: str = config.DEFAULT_MEDIA_ROOT) -> str:
    """'Google Photos' -> 'Takeout/Google Photos/'"""
    return f"{config.TAKEOUT_ROOT}/{media_root.strip('/')}/"


class EntryCatalog:
    """
    Unified view over every volume of one export.

    Entries are kept in (volume, enumeration order) so every later tie-break
    is deterministic. Content is never read here; an Entry only knows how to
    open itself through its source.
    """

    def __init__(self,
                 entries: List[Entry],
                 normalizer: NameNormalizer,
                 faults: Optional[List[VolumeFault]] = None,
                 volumes: Optional[Mapping[int, str]] = None):
        self.normalizer = normalizer
        self.entries = sorted(entries, key=lambda e: e.sort_key)
        self.faults = sorted(faults or [], key=lambda f: f.volume)
        self.volumes = dict(volumes or {})

        self._keys: Dict[Entry, NormalizedKey] = {}
        self._by_key: Dict[NormalizedKey, List[Entry]] = {}
        for entry in self.entries:
            key = normalizer.normalize(entry.relative_path)
            self._keys[entry] = key
            self._by_key.setdefault(key, []).append(entry)

    @classmethod
    def build(cls,
              sources: Mapping[int, ArchiveEntrySource],
              normalizer: NameNormalizer,
              media_root: str = config.DEFAULT_MEDIA_ROOT,
              max_workers: int = config.DEFAULT_WORKERS) -> "EntryCatalog":
        """
        Enumerates every volume concurrently and merges the listings.

        A volume that cannot be read becomes a VolumeFault; entries it listed
        before failing are kept. Raises CatalogError when no volume could be
        enumerated at all.
        """
        if not sources:
            raise CatalogError("No archive volumes given")

        prefix = media_root_prefix(media_root)
        entries: List[Entry] = []
        faults: List[VolumeFault] = []
        enumerated = 0

        workers = max(1, min(max_workers, len(sources)))
        logging.info(f"Enumerating {len(sources)} volume(s) with {workers} worker(s)")

        with ThreadPoolExecutor(max_workers=workers) as executor:
            future_to_volume = {
                executor.submit(cls._enumerate, volume, source, prefix): volume
                for volume, source in sources.items()
            }
            for future in as_completed(future_to_volume):
                volume = future_to_volume[future]
                source = sources[volume]
                volume_entries, error = future.result()
                entries.extend(volume_entries)

                if error is None:
                    enumerated += 1
                    logging.info(f"Volume {volume} ({source.name}): {len(volume_entries)} entries below {prefix}")
                    continue

                logging.warning(f"Volume {volume} ({source.name}) skipped: {error.reason}")
                faults.append(VolumeFault(volume, str(source.path), error.reason))
                if volume_entries:
                    enumerated += 1
                    logging.warning(f"Keeping {len(volume_entries)} entries listed before the fault")

        if not enumerated:
            raise CatalogError("No archive volume could be enumerated")

        volumes = {volume: str(source.path) for volume, source in sources.items()}
        return cls(entries, normalizer, faults, volumes)

    @staticmethod
    def _enumerate(volume: int,
                   source: ArchiveEntrySource,
                   prefix: str) -> Tuple[List[Entry], Optional[VolumeError]]:
        entries: List[Entry] = []
        try:
            for info in source.list_entries():
                relative = relative_to_root(info.path, prefix)
                if relative is None:
                    continue
                entries.append(Entry(
                    raw_path=info.path,
                    relative_path=relative,
                    volume=volume,
                    size=info.size,
                    order=info.offset,
                    source=source,
                ))
        except VolumeError as e:
            return entries, e
        return entries, None

    # --- Queries ---

    def key_for(self, entry: Entry) -> NormalizedKey:
        return self._keys[entry]

    def candidates(self, key: NormalizedKey) -> List[Entry]:
        """Entries sharing a normalized key, first-seen first."""
        return list(self._by_key.get(key, ()))

    def media(self) -> List[Entry]:
        return [e for e in self.entries if self._keys[e].is_media]

    def sidecars(self) -> List[Entry]:
        return [e for e in self.entries if self._keys[e].is_sidecar]

    def iter_keys(self) -> Iterator[Tuple[Entry, NormalizedKey]]:
        for entry in self.entries:
            yield entry, self._keys[entry]

    def __len__(self):
        return len(self.entries)


def relative_to_root(raw_path: str, prefix: str) -> Optional[str]:
    """Path below the media root, or None for directories and paths outside it."""
    path = unicodedata.normalize("NFC", raw_path.replace("\\", "/"))
    while path.startswith("./"):
        path = path[2:]
    path = path.lstrip("/")

    if not path.startswith(prefix) or path.endswith("/"):
        return None
    relative = path[len(prefix):]
    return relative or None
