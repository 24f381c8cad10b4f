from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import PurePosixPath
from typing import Any, BinaryIO, Optional, Tuple


@dataclass(frozen=True)
class Entry:
    """
    A file inside one archive volume, cataloged below the media root.
    """
    raw_path: str           # path as stored in the archive
    relative_path: str      # path below Takeout/<media root>/
    volume: int
    size: int
    order: int              # enumeration order within the volume
    source: Any = field(default=None, compare=False, repr=False)

    @property
    def name(self) -> str:
        return PurePosixPath(self.relative_path).name

    @property
    def directory(self) -> str:
        parent = str(PurePosixPath(self.relative_path).parent)
        return "" if parent == "." else parent

    @property
    def sort_key(self) -> Tuple[int, int]:
        return (self.volume, self.order)

    def open(self) -> BinaryIO:
        """Opens the entry's content lazily through its archive source."""
        if self.source is None:
            raise ValueError(f"Entry {self.raw_path} has no archive source")
        return self.source.open_entry(self.raw_path, self.order)


@dataclass(frozen=True)
class NormalizedKey:
    directory: str
    stem: str
    extension: str          # media extension as written, '' when unknown/truncated away
    kind: str               # image/video/sidecar/other
    counter: int = 0
    edited: bool = False
    supplemental: bool = False

    @property
    def title(self) -> str:
        return f"{self.stem}{self.extension}"

    @property
    def is_media(self) -> bool:
        return self.kind in ('image', 'video')

    @property
    def is_sidecar(self) -> bool:
        return self.kind == 'sidecar'


@dataclass(frozen=True)
class GeoLocation:
    latitude: float
    longitude: float
    altitude: float = 0.0


@dataclass(frozen=True)
class MetadataRecord:
    """
    Parsed sidecar content. Never mutated after parse.
    """
    source_path: str
    capture_time: Optional[datetime] = None   # timezone-aware UTC
    location: Optional[GeoLocation] = None
    description: Optional[str] = None
    title: Optional[str] = None               # original filename declared in the JSON
    partial: bool = False
    problems: Tuple[str, ...] = ()

    @property
    def has_fields(self) -> bool:
        return any(v is not None for v in (self.capture_time, self.location, self.description))


class MatchKind(Enum):
    MATCHED = "matched"
    UNMATCHED = "unmatched"
    AMBIGUOUS = "ambiguous"


@dataclass(frozen=True)
class MatchResult:
    media: Entry
    kind: MatchKind
    sidecar: Optional[Entry] = None
    candidate_count: int = 0
    via: Optional[str] = None       # exact/prefix/edited-fallback/title

    @classmethod
    def matched(cls, media: Entry, sidecar: Entry, via: str) -> "MatchResult":
        return cls(media=media, kind=MatchKind.MATCHED, sidecar=sidecar, candidate_count=1, via=via)

    @classmethod
    def unmatched(cls, media: Entry) -> "MatchResult":
        return cls(media=media, kind=MatchKind.UNMATCHED)

    @classmethod
    def ambiguous(cls, media: Entry, candidate_count: int) -> "MatchResult":
        return cls(media=media, kind=MatchKind.AMBIGUOUS, candidate_count=candidate_count)


class OutcomeStatus(Enum):
    WRITTEN = "written"
    WRITTEN_WITHOUT_METADATA = "written_without_metadata"
    SKIPPED_AMBIGUOUS = "skipped_ambiguous"
    FAILED = "failed"


class FaultKind(Enum):
    VOLUME = "volume"
    PARSE = "parse"
    AMBIGUITY = "ambiguity"
    MISS = "miss"
    INJECTION = "injection"
    WRITE = "write"
    DUPLICATE = "duplicate"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class RunOutcome:
    relative_path: str
    status: OutcomeStatus
    volume: int
    fault: Optional[FaultKind] = None
    reason: Optional[str] = None
    reused: bool = False            # left untouched from a previous run


@dataclass(frozen=True)
class VolumeFault:
    volume: int
    archive: str
    reason: str
