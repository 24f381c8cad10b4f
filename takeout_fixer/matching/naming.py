import re
import unicodedata
from functools import lru_cache
from pathlib import PurePosixPath
from typing import Tuple

from .. import config
from ..models import NormalizedKey
from .rules import NamingRules, DEFAULT_RULES

_COUNTER_RE = re.compile(r'\((\d+)\)$')
_MEDIA_EXTS = config.IMAGE_EXTS | config.VIDEO_EXTS


class NameNormalizer:
    """
    Turns a raw archive path into a NormalizedKey by reversing the exporter's
    lossy renaming:

      1. ".json"                      -> sidecar, stem is the media name it describes
      2. "-edited" / ".supplemental-metadata" (and truncations) -> marker flags
      3. "(N)"                        -> disambiguation counter
      4. truncation                   -> tolerated by the Matcher via prefix comparison

    Pure function of the path string; applying it to a key's title again
    returns the same stem.
    """

    def __init__(self, rules: NamingRules = DEFAULT_RULES):
        self.rules = rules

        edited = "|".join(re.escape(t) for t in rules.edited_tokens)
        self._edited_re = re.compile(rf'-(?:{edited})$', re.IGNORECASE)

        markers = "|".join(re.escape(m) for m in rules.marker_variants())
        self._supplemental_re = re.compile(rf'\.(?:{markers})(?P<counter>\(\d+\))?$', re.IGNORECASE)

    def normalize(self, path: str) -> NormalizedKey:
        posix = PurePosixPath(unicodedata.normalize("NFC", path.replace("\\", "/")))
        directory = str(posix.parent)
        if directory == ".":
            directory = ""
        name = posix.name

        if name.lower().endswith(config.SIDECAR_EXT) and len(name) > len(config.SIDECAR_EXT):
            return self._normalize_sidecar(directory, name)
        return self._normalize_media(directory, name)

    def is_truncated(self, key: NormalizedKey) -> bool:
        """True when the exporter may have cut this title in the sidecar's name."""
        return len(key.title) > self.rules.min_prefix_length

    # --- Internal Rules ---

    def _normalize_sidecar(self, directory: str, name: str) -> NormalizedKey:
        rest = name[:-len(config.SIDECAR_EXT)]

        if self._is_album_metadata(rest):
            return NormalizedKey(directory, rest, '', 'other')

        # Rule 2: supplemental marker, keeping a trailing counter for rule 3
        supplemental = False
        m = self._supplemental_re.search(rest)
        if m and m.start() > 0:
            supplemental = True
            rest = rest[:m.start()] + (m.group('counter') or '')

        # Rule 3: "photo.jpg(1)" style counter after the media extension
        rest, counter = self._strip_counters(rest)

        # Rules 2-3 again on the described media name ("photo(1)-edited.jpg")
        stem, ext = self._split_media_ext(rest)
        stem, edited, inner_counter = self._strip_noise(stem)

        return NormalizedKey(
            directory=directory,
            stem=stem,
            extension=ext,
            kind='sidecar',
            counter=counter or inner_counter,
            edited=edited,
            supplemental=supplemental,
        )

    def _normalize_media(self, directory: str, name: str) -> NormalizedKey:
        stem, ext = self._split_media_ext(name)
        kind = config.EXT_TO_KIND.get(ext.lower(), 'other') if ext else 'other'
        stem, edited, counter = self._strip_noise(stem)
        return NormalizedKey(directory, stem, ext, kind, counter, edited)

    def _split_media_ext(self, name: str) -> Tuple[str, str]:
        suffix = PurePosixPath(name).suffix
        if suffix and suffix.lower() in _MEDIA_EXTS and len(name) > len(suffix):
            return name[:-len(suffix)], suffix
        return name, ''

    def _strip_noise(self, stem: str) -> Tuple[str, bool, int]:
        """Strips edited markers and counters until the stem is stable."""
        edited = False
        counter = 0
        while True:
            m = self._edited_re.search(stem)
            if m and m.start() > 0:
                stem = stem[:m.start()]
                edited = True
                continue

            stem, found = self._strip_one_counter(stem)
            if found is None:
                return stem, edited, counter
            if not counter:
                counter = found

    def _strip_counters(self, stem: str) -> Tuple[str, int]:
        counter = 0
        while True:
            stem, found = self._strip_one_counter(stem)
            if found is None:
                return stem, counter
            if not counter:
                counter = found

    def _strip_one_counter(self, stem: str):
        m = _COUNTER_RE.search(stem)
        if m and m.start() > 0:
            return stem[:m.start()], int(m.group(1))
        return stem, None

    def _is_album_metadata(self, rest: str) -> bool:
        base, _ = self._strip_counters(rest)
        return f"{base.lower()}{config.SIDECAR_EXT}" in config.ALBUM_METADATA_NAMES


@lru_cache(maxsize=None)
def _normalizer_for(rules: NamingRules) -> NameNormalizer:
    return NameNormalizer(rules)


def normalize(path: str, rules: NamingRules = DEFAULT_RULES) -> NormalizedKey:
    """Module-level shortcut for NameNormalizer(rules).normalize(path)."""
    return _normalizer_for(rules).normalize(path)
