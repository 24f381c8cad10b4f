import csv
import json
import logging
import threading
from collections import Counter
from datetime import datetime, UTC
from pathlib import Path
from typing import Any, Dict, List, Optional

from . import config
from .models import FaultKind, OutcomeStatus, RunOutcome, VolumeFault


class RunReporter:
    """
    Accumulates per-entry outcomes and run-level findings, then renders the
    JSON summary and the CSV report. One instance is owned by a run and
    handed to the output workers; add() is the only call made concurrently.
    """

    def __init__(self, volumes: Optional[Dict[int, str]] = None, dry_run: bool = False):
        self._lock = threading.Lock()
        self.volumes = dict(volumes or {})
        self.dry_run = dry_run
        self.started_at = datetime.now(UTC)
        self.finished_at: Optional[datetime] = None

        self.outcomes: List[RunOutcome] = []
        self.volume_faults: List[VolumeFault] = []
        self.unused_sidecars: List[str] = []
        self.duplicates: List[Dict[str, Any]] = []

    # --- Accumulation ---

    def add(self, outcome: RunOutcome):
        with self._lock:
            self.outcomes.append(outcome)

    def record_volume_fault(self, fault: VolumeFault):
        with self._lock:
            self.volume_faults.append(fault)

    def record_unused_sidecar(self, relative_path: str):
        with self._lock:
            self.unused_sidecars.append(relative_path)

    def record_duplicate(self, relative_path: str, volume: int, kept_volume: int):
        with self._lock:
            self.duplicates.append({'path': relative_path, 'volume': volume, 'kept_volume': kept_volume})

    def finish(self):
        self.finished_at = datetime.now(UTC)

    # --- Views ---

    def status_counts(self) -> Dict[str, int]:
        counts = Counter(o.status.value for o in self.outcomes)
        return {status.value: counts.get(status.value, 0) for status in OutcomeStatus}

    def fault_counts(self) -> Dict[str, int]:
        counts = Counter(o.fault.value for o in self.outcomes if o.fault)
        counts[FaultKind.VOLUME.value] += len(self.volume_faults)
        return {fault.value: counts.get(fault.value, 0) for fault in FaultKind}

    def paths_with(self, status: OutcomeStatus, fault: Optional[FaultKind] = None) -> List[str]:
        return sorted(o.relative_path for o in self.outcomes
                      if o.status == status and (fault is None or o.fault == fault))

    def has_warnings(self) -> bool:
        if self.volume_faults:
            return True
        return any(o.status != OutcomeStatus.WRITTEN or o.fault for o in self.outcomes)

    def exit_status(self) -> int:
        return config.EXIT_WARNINGS if self.has_warnings() else config.EXIT_OK

    def summary(self) -> Dict[str, Any]:
        def detail(o: RunOutcome) -> Dict[str, Any]:
            return {
                'path': o.relative_path,
                'volume': o.volume,
                'status': o.status.value,
                'fault': o.fault.value if o.fault else None,
                'reason': o.reason,
            }

        ordered = sorted(self.outcomes, key=lambda o: (o.relative_path, o.volume))
        return {
            'run': {
                'started_at': self.started_at.isoformat(),
                'finished_at': self.finished_at.isoformat() if self.finished_at else None,
                'dry_run': self.dry_run,
                'volumes': {str(k): v for k, v in sorted(self.volumes.items())},
            },
            'media_entries': len(self.outcomes),
            'counts': self.status_counts(),
            'faults': self.fault_counts(),
            'reused': sum(1 for o in self.outcomes if o.reused),
            'unmatched': self.paths_with(OutcomeStatus.WRITTEN_WITHOUT_METADATA, FaultKind.MISS),
            'ambiguous': self.paths_with(OutcomeStatus.SKIPPED_AMBIGUOUS),
            'failed': [detail(o) for o in ordered if o.status == OutcomeStatus.FAILED],
            'degraded': [detail(o) for o in ordered
                         if o.status != OutcomeStatus.FAILED and o.fault
                         and o.fault not in (FaultKind.MISS, FaultKind.AMBIGUITY)],
            'volume_faults': [
                {'volume': f.volume, 'archive': f.archive, 'reason': f.reason}
                for f in sorted(self.volume_faults, key=lambda f: f.volume)
            ],
            'unused_sidecars': sorted(self.unused_sidecars),
            'duplicates': sorted(self.duplicates, key=lambda d: (d['path'], d['volume'])),
            'exit_status': self.exit_status(),
        }

    # --- Rendering ---

    def write_json(self, path: Path):
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self.summary(), f, indent=2, ensure_ascii=False)
        logging.info(f"Summary written to {path}")

    def write_csv(self, path: Path):
        headers = ["Relative Path", "Volume", "Status", "Fault", "Reused", "Reason"]
        with open(path, "w", newline="", encoding="utf-8") as f:
            writer = csv.writer(f)
            writer.writerow(headers)
            for o in sorted(self.outcomes, key=lambda o: (o.relative_path, o.volume)):
                writer.writerow([
                    o.relative_path,
                    o.volume,
                    o.status.value,
                    o.fault.value if o.fault else "",
                    "yes" if o.reused else "",
                    o.reason or "",
                ])
        logging.info(f"Report written to {path}")

    def log_summary(self):
        counts = self.status_counts()
        logging.info("=" * 40)
        logging.info("Run Summary")
        for status, n in counts.items():
            logging.info(f"  {status:<26} {n}")
        reused = sum(1 for o in self.outcomes if o.reused)
        if reused:
            logging.info(f"  {'unchanged from last run':<26} {reused}")
        if self.volume_faults:
            logging.warning(f"  {len(self.volume_faults)} volume(s) skipped or truncated")
        if self.unused_sidecars:
            logging.info(f"  {len(self.unused_sidecars)} sidecar(s) matched no media")
        logging.info("=" * 40)
