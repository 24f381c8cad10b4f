import logging
import os
import shutil
import tempfile
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import BinaryIO, Dict, List, Optional, Sequence

from tqdm import tqdm

from .. import config
from ..database.ops import ManifestOps
from ..exceptions import InjectionError, OutputWriteError, VolumeError
from ..metadata.inject import ExifInjector
from ..metadata.sidecar import SidecarParser
from ..models import (Entry, FaultKind, MatchKind, MatchResult, MetadataRecord,
                      OutcomeStatus, RunOutcome)
from ..reporting import RunReporter
from ..scanning.hasher import Fingerprinter


@dataclass(frozen=True)
class _Plan:
    """What a single entry should become before any byte is written."""
    status: OutcomeStatus
    record: Optional[MetadataRecord] = None
    fault: Optional[FaultKind] = None
    reason: Optional[str] = None


class OutputWriter:
    """
    Streams media entries into the destination tree, injecting metadata on
    the way. Every output is staged in a temporary file next to its final
    path and renamed into place only after it is fully on disk.
    """

    def __init__(self,
                 dest_root: Path,
                 manifest: ManifestOps,
                 reporter: RunReporter,
                 parser: Optional[SidecarParser] = None,
                 injector: Optional[ExifInjector] = None,
                 fingerprinter: Optional[Fingerprinter] = None,
                 max_workers: int = config.DEFAULT_WORKERS,
                 cancel_event: Optional[threading.Event] = None,
                 dry_run: bool = False,
                 show_progress: bool = True):
        self.dest_root = Path(dest_root)
        self.manifest = manifest
        self.reporter = reporter
        self.parser = parser or SidecarParser()
        self.injector = injector or ExifInjector()
        self.fingerprinter = fingerprinter or Fingerprinter()
        self.max_workers = max(1, max_workers)
        self.cancel_event = cancel_event or threading.Event()
        self.dry_run = dry_run
        self.show_progress = show_progress

    def write_all(self, results: Sequence[MatchResult]) -> List[RunOutcome]:
        """
        Writes every media entry once. Entries sharing a relative path are
        resolved first: the earliest copy is written, later ones are either
        recorded as duplicates or failed when their size differs.
        """
        tasks = self._resolve_duplicates(results)
        if not tasks:
            logging.info("No media entries to write.")
            return []

        mode = "Planning" if self.dry_run else "Writing"
        logging.info(f"{mode} {len(tasks)} media entries with {self.max_workers} worker(s)...")
        if not self.dry_run:
            self.dest_root.mkdir(parents=True, exist_ok=True)

        outcomes: Dict[int, RunOutcome] = {}
        with tqdm(total=len(tasks), desc=mode, unit="file", disable=not self.show_progress) as bar:
            if self.max_workers == 1:
                for index, result in enumerate(tasks):
                    outcomes[index] = self.write_one(result)
                    bar.update(1)
            else:
                with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
                    future_to_index = {
                        executor.submit(self.write_one, result): index
                        for index, result in enumerate(tasks)
                    }
                    for future in as_completed(future_to_index):
                        outcomes[future_to_index[future]] = future.result()
                        bar.update(1)

        return [outcomes[i] for i in range(len(tasks))]

    def write_one(self, result: MatchResult) -> RunOutcome:
        outcome = self._write(result)
        self.reporter.add(outcome)
        if outcome.status == OutcomeStatus.FAILED:
            logging.warning(f"Failed {outcome.relative_path} ({outcome.fault.value}): {outcome.reason}")
        elif outcome.fault and not outcome.reused:
            logging.debug(f"{outcome.relative_path}: {outcome.status.value} ({outcome.fault.value}) {outcome.reason or ''}")
        return outcome

    # --- Pipeline ---

    def _write(self, result: MatchResult) -> RunOutcome:
        media = result.media
        rel = media.relative_path

        def outcome(status, fault=None, reason=None) -> RunOutcome:
            return RunOutcome(rel, status, media.volume, fault, reason)

        # Checked before each entry; in-flight entries run to their rename
        if self.cancel_event.is_set():
            return outcome(OutcomeStatus.FAILED, FaultKind.CANCELLED, "run cancelled")

        try:
            dest = self.dest_path(rel)
        except OutputWriteError as e:
            return outcome(OutcomeStatus.FAILED, FaultKind.WRITE, str(e))

        try:
            previous = self._previous_outcome(rel, dest)
        except OSError as e:
            logging.debug(f"Cannot check existing output {dest}: {e}")
            previous = None
        if previous is not None:
            return previous

        plan = self._plan(result)
        if self.dry_run:
            return outcome(plan.status, plan.fault, plan.reason)

        try:
            if plan.record is not None:
                plan = self._write_injected(media, plan, dest)
            else:
                with media.open() as src:
                    self._stage_and_commit(src, dest)
        except VolumeError as e:
            return outcome(OutcomeStatus.FAILED, FaultKind.VOLUME, e.reason)
        except (OSError, OutputWriteError) as e:
            return outcome(OutcomeStatus.FAILED, FaultKind.WRITE, str(e))
        except Exception as e:
            logging.exception(f"Failed to process {rel} -> {dest}: {e}")
            fault = FaultKind.INJECTION if plan.record is not None else FaultKind.WRITE
            return outcome(OutcomeStatus.FAILED, fault, f"{type(e).__name__}: {e}")

        final = outcome(plan.status, plan.fault, plan.reason)
        try:
            self.manifest.record_output(final, dest.stat().st_size, self.fingerprinter.fingerprint(dest))
        except OSError as e:
            return outcome(OutcomeStatus.FAILED, FaultKind.WRITE, f"written but not recorded: {e}")
        return final

    def _plan(self, result: MatchResult) -> _Plan:
        if result.kind == MatchKind.AMBIGUOUS:
            return _Plan(OutcomeStatus.SKIPPED_AMBIGUOUS, fault=FaultKind.AMBIGUITY,
                         reason=f"{result.candidate_count} media claim the same sidecar")

        if result.kind == MatchKind.UNMATCHED:
            return _Plan(OutcomeStatus.WRITTEN_WITHOUT_METADATA, fault=FaultKind.MISS,
                         reason="no sidecar found")

        try:
            record = self.parser.parse(result.sidecar)
        except VolumeError as e:
            return _Plan(OutcomeStatus.WRITTEN_WITHOUT_METADATA, fault=FaultKind.PARSE,
                         reason=f"sidecar unreadable: {e.reason}")

        if not record.has_fields:
            reason = "; ".join(record.problems) or "sidecar carries no usable metadata"
            return _Plan(OutcomeStatus.WRITTEN_WITHOUT_METADATA, fault=FaultKind.PARSE, reason=reason)

        if record.partial:
            return _Plan(OutcomeStatus.WRITTEN, record, FaultKind.PARSE, "; ".join(record.problems))
        return _Plan(OutcomeStatus.WRITTEN, record)

    def _write_injected(self, media: Entry, plan: _Plan, dest: Path) -> _Plan:
        try:
            with media.open() as src:
                injected = self.injector.inject(src, plan.record, media.name)
        except InjectionError as e:
            logging.warning(f"Writing {media.relative_path} without metadata: {e}")
            with media.open() as src:
                self._stage_and_commit(src, dest)
            return _Plan(OutcomeStatus.WRITTEN_WITHOUT_METADATA, fault=FaultKind.INJECTION, reason=str(e))

        with injected:
            self._stage_and_commit(injected, dest)
        return plan

    # --- Filesystem ---

    def dest_path(self, relative_path: str) -> Path:
        parts = PurePosixPath(relative_path).parts
        if not parts or PurePosixPath(relative_path).is_absolute() or '..' in parts:
            raise OutputWriteError(f"Refusing to write outside the destination: {relative_path!r}")
        return self.dest_root.joinpath(*parts)

    def _stage_and_commit(self, stream: BinaryIO, dest: Path):
        """Copy to a temp file in dest's directory, fsync, then rename over dest."""
        dest.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=config.TEMP_PREFIX, suffix=config.TEMP_SUFFIX, dir=dest.parent)
        try:
            with os.fdopen(fd, 'wb') as f:
                shutil.copyfileobj(stream, f, config.COPY_BUFFER_SIZE)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_name, 0o644)
            os.replace(tmp_name, dest)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise

    def _previous_outcome(self, rel: str, dest: Path) -> Optional[RunOutcome]:
        """The recorded outcome when dest still holds exactly what we wrote last time."""
        row = self.manifest.lookup_output(rel)
        if row is None or not dest.is_file():
            return None
        if dest.stat().st_size != row.size_bytes:
            return None
        if self.fingerprinter.fingerprint(dest) != row.fingerprint:
            return None
        logging.debug(f"Unchanged since last run: {rel}")
        return row.to_outcome()

    # --- Planning ---

    def _resolve_duplicates(self, results: Sequence[MatchResult]) -> List[MatchResult]:
        first: Dict[str, MatchResult] = {}
        tasks: List[MatchResult] = []

        for result in sorted(results, key=lambda r: r.media.sort_key):
            media = result.media
            kept = first.get(media.relative_path)
            if kept is None:
                first[media.relative_path] = result
                tasks.append(result)
                continue

            if kept.media.size == media.size:
                logging.info(f"Duplicate of {media.relative_path} in volume {media.volume} ignored")
                self.reporter.record_duplicate(media.relative_path, media.volume, kept.media.volume)
            else:
                reason = (f"conflicts with volume {kept.media.volume} copy "
                          f"({media.size} vs {kept.media.size} bytes)")
                self._record_conflict(media, reason)

        return tasks

    def _record_conflict(self, media: Entry, reason: str):
        outcome = RunOutcome(media.relative_path, OutcomeStatus.FAILED, media.volume, FaultKind.DUPLICATE, reason)
        self.reporter.add(outcome)
        logging.warning(f"Failed {media.relative_path} (duplicate): {reason}")
