import logging
import unicodedata
from collections import Counter
from typing import Callable, Collection, Dict, List, Optional, Set, Tuple

from ..archive.catalog import EntryCatalog
from ..exceptions import TakeoutFixerError
from ..models import Entry, MatchKind, MatchResult, NormalizedKey

TitleHint = Callable[[Entry], Optional[str]]

_ExactKey = Tuple[str, str, str, int, bool]


class Matcher:
    """
    Pairs every media entry of a catalog with at most one sidecar.

    Stages, in precedence order:
      1. exact    - same directory, stem, extension, counter and edited flag
      2. prefix   - sidecar title is a truncated prefix of the media title
      3. fallback - an edited copy borrows the sidecar of its original, and
                    shares its ambiguity; never one settled on other media

    Whenever two distinct media paths land on the same sidecar in stage 1 or 2
    the match is abandoned for all of them (Ambiguous), unless the sidecar's
    own title names exactly one of them.
    """

    def __init__(self, catalog: EntryCatalog, title_hint: Optional[TitleHint] = None):
        self.catalog = catalog
        self.rules = catalog.normalizer.rules
        self.title_hint = title_hint

        self._exact_index: Dict[_ExactKey, List[Entry]] = {}
        self._by_dir: Dict[str, List[Tuple[Entry, NormalizedKey]]] = {}
        for entry, key in catalog.iter_keys():
            if not key.is_sidecar:
                continue
            self._exact_index.setdefault(self._exact_key(key), []).append(entry)
            self._by_dir.setdefault(key.directory, []).append((entry, key))

        self._results: Optional[List[MatchResult]] = None
        self._used: Set[Entry] = set()
        # How stages 1-2 settled each claimed sidecar
        self._owners: Dict[Entry, List[Entry]] = {}
        self._ambiguous: Dict[Entry, int] = {}

    def match_all(self) -> List[MatchResult]:
        """One MatchResult per media entry, in catalog order."""
        if self._results is None:
            self._results = self._match()
            counts = Counter(r.kind for r in self._results)
            logging.info(
                f"Matching: {counts[MatchKind.MATCHED]} matched, "
                f"{counts[MatchKind.UNMATCHED]} unmatched, "
                f"{counts[MatchKind.AMBIGUOUS]} ambiguous"
            )
        return list(self._results)

    def unclaimed_sidecars(self) -> List[Entry]:
        """Sidecars no media entry claimed, not even ambiguously."""
        self.match_all()
        used_paths = {e.relative_path for e in self._used}
        return [e for e in self.catalog.sidecars()
                if e not in self._used and e.relative_path not in used_paths]

    # --- Stages ---

    def _match(self) -> List[MatchResult]:
        media = [(e, self.catalog.key_for(e)) for e in self.catalog.media()]
        claims: Dict[Entry, Tuple[Entry, str]] = {}

        # Stage 1
        exact_claimed: Set[Entry] = set()
        for entry, key in media:
            sidecar = self._find_exact(key)
            if sidecar is not None:
                claims[entry] = (sidecar, 'exact')
                exact_claimed.add(sidecar)

        # Stage 2
        for entry, key in media:
            if entry in claims:
                continue
            sidecar = self._find_prefix(key, exclude=exact_claimed)
            if sidecar is not None:
                claims[entry] = (sidecar, 'prefix')

        claimants: Dict[Entry, List[Entry]] = {}
        for entry, (sidecar, _) in claims.items():
            claimants.setdefault(sidecar, []).append(entry)

        results: Dict[Entry, MatchResult] = {}
        for sidecar, entries in claimants.items():
            self._used.add(sidecar)
            paths = {e.relative_path for e in entries}
            if len(paths) == 1:
                for e in entries:
                    results[e] = MatchResult.matched(e, sidecar, claims[e][1])
            else:
                results.update(self._resolve_collision(sidecar, entries, len(paths)))

            settled = [e for e in entries if results[e].kind == MatchKind.MATCHED]
            if settled:
                self._owners[sidecar] = settled
            elif results[entries[0]].kind == MatchKind.AMBIGUOUS:
                self._ambiguous[sidecar] = results[entries[0]].candidate_count

        # Stage 3
        for entry, key in media:
            if entry in results:
                continue
            result = self._edited_fallback(entry, key) if key.edited else None
            results[entry] = result or MatchResult.unmatched(entry)

        return [results[e] for e, _ in media]

    def _edited_fallback(self, entry: Entry, key: NormalizedKey) -> Optional[MatchResult]:
        original = NormalizedKey(
            directory=key.directory,
            stem=key.stem,
            extension=key.extension,
            kind=key.kind,
            counter=key.counter,
        )
        sidecar = self._find_exact(original) or self._find_prefix(original, exclude=())
        if sidecar is None:
            return None

        if sidecar in self._ambiguous:
            logging.debug(f"{entry.relative_path}: original's sidecar {sidecar.relative_path} is ambiguous")
            return MatchResult.ambiguous(entry, self._ambiguous[sidecar])
        owners = self._owners.get(sidecar)
        wanted = self._exact_key(original)
        if owners and not any(self._exact_key(self.catalog.key_for(o)) == wanted for o in owners):
            logging.debug(f"{entry.relative_path}: {sidecar.relative_path} already belongs to {owners[0].relative_path}")
            return None

        self._used.add(sidecar)
        logging.debug(f"{entry.relative_path}: using sidecar of unedited original {sidecar.relative_path}")
        return MatchResult.matched(entry, sidecar, 'edited-fallback')

    def _resolve_collision(self, sidecar: Entry, entries: List[Entry], count: int) -> Dict[Entry, MatchResult]:
        hint = self._read_title(sidecar)
        if hint:
            named = {e.relative_path for e in entries if e.name == hint}
            if len(named) == 1:
                logging.info(f"{sidecar.relative_path}: declared title '{hint}' resolves {count} claimants")
                return {
                    e: MatchResult.matched(e, sidecar, 'title') if e.relative_path in named
                    else MatchResult.unmatched(e)
                    for e in entries
                }

        logging.warning(f"{sidecar.relative_path}: claimed by {count} distinct media, marking all ambiguous")
        return {e: MatchResult.ambiguous(e, count) for e in entries}

    # --- Lookups ---

    def _find_exact(self, key: NormalizedKey) -> Optional[Entry]:
        candidates = self._exact_index.get(self._exact_key(key))
        if not candidates:
            return None
        return min(candidates, key=self._preference)

    def _find_prefix(self, key: NormalizedKey, exclude: Collection[Entry]) -> Optional[Entry]:
        if not self.catalog.normalizer.is_truncated(key):
            return None
        floor = self.rules.min_prefix_length
        title = key.title

        candidates = []
        for entry, skey in self._by_dir.get(key.directory, ()):
            if skey.counter != key.counter or skey.edited != key.edited or entry in exclude:
                continue
            stitle = skey.title
            if floor <= len(stitle) < len(title) and title.startswith(stitle):
                candidates.append((entry, len(stitle)))

        if not candidates:
            return None
        longest = max(length for _, length in candidates)
        return min((e for e, length in candidates if length == longest), key=self._preference)

    def _preference(self, sidecar: Entry):
        # Primary before supplemental, then first seen
        return (self.catalog.key_for(sidecar).supplemental, sidecar.volume, sidecar.order)

    def _read_title(self, sidecar: Entry) -> Optional[str]:
        if self.title_hint is None:
            return None
        try:
            title = self.title_hint(sidecar)
        except TakeoutFixerError as e:
            logging.debug(f"No title hint from {sidecar.relative_path}: {e}")
            return None
        return unicodedata.normalize("NFC", title) if title else None

    @staticmethod
    def _exact_key(key: NormalizedKey) -> _ExactKey:
        return (key.directory, key.stem, key.extension.lower(), key.counter, key.edited)
