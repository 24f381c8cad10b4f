import json
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime, UTC
from typing import Any, Dict, List, Optional

from ..models import FaultKind, OutcomeStatus, RunOutcome


@dataclass(frozen=True)
class ManifestRow:
    rel_path: str
    size_bytes: int
    fingerprint: str
    status: OutcomeStatus
    fault: Optional[FaultKind]
    reason: Optional[str]
    volume: Optional[int]
    written_at: str

    def to_outcome(self) -> RunOutcome:
        """Replays the recorded outcome for an output left untouched."""
        return RunOutcome(
            relative_path=self.rel_path,
            status=self.status,
            volume=self.volume or 0,
            fault=self.fault,
            reason=self.reason,
            reused=True,
        )


class ManifestOps:
    """
    Reads and writes the output manifest. Each call commits on its own so a
    crash loses at most the output being written.
    """

    def __init__(self, conn: sqlite3.Connection, write_lock: Optional[threading.Lock] = None):
        self.conn = conn
        self.lock = write_lock or threading.Lock()

    def lookup_output(self, rel_path: str) -> Optional[ManifestRow]:
        with self.lock:
            cur = self.conn.execute("""
                SELECT rel_path, size_bytes, fingerprint, status, fault, reason, volume, written_at
                FROM outputs WHERE rel_path = ?
            """, (rel_path,))
            row = cur.fetchone()
        if row is None:
            return None

        try:
            status = OutcomeStatus(row[3])
            fault = FaultKind(row[4]) if row[4] else None
        except ValueError:
            # Written by an incompatible version; treat as unknown
            return None
        return ManifestRow(row[0], row[1], row[2], status, fault, row[5], row[6], row[7])

    def record_output(self, outcome: RunOutcome, size_bytes: int, fingerprint: str):
        now_iso = datetime.now(UTC).isoformat()
        with self.lock, self.conn:
            self.conn.execute("""
                INSERT OR REPLACE INTO outputs
                (rel_path, size_bytes, fingerprint, status, fault, reason, volume, written_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                outcome.relative_path, size_bytes, fingerprint, outcome.status.value,
                outcome.fault.value if outcome.fault else None, outcome.reason,
                outcome.volume, now_iso,
            ))

    def count_outputs(self) -> int:
        with self.lock:
            return self.conn.execute("SELECT COUNT(*) FROM outputs").fetchone()[0]

    def start_run(self, volumes: List[str]) -> int:
        now_iso = datetime.now(UTC).isoformat()
        with self.lock, self.conn:
            cur = self.conn.execute(
                "INSERT INTO runs (started_at, volumes) VALUES (?, ?)",
                (now_iso, json.dumps(volumes)),
            )
            if cur.lastrowid is None:
                raise RuntimeError("Database INSERT failed to return a row ID.")
            return cur.lastrowid

    def finish_run(self, run_id: int, summary: Dict[str, Any]):
        now_iso = datetime.now(UTC).isoformat()
        with self.lock, self.conn:
            self.conn.execute(
                "UPDATE runs SET finished_at = ?, summary_json = ? WHERE id = ?",
                (now_iso, json.dumps(summary, sort_keys=True), run_id),
            )

    def fetch_runs(self) -> List[Dict[str, Any]]:
        with self.lock:
            cur = self.conn.execute(
                "SELECT id, started_at, finished_at, volumes, summary_json FROM runs ORDER BY id"
            )
            rows = cur.fetchall()
        return [
            {
                'id': r[0], 'started_at': r[1], 'finished_at': r[2],
                'volumes': json.loads(r[3]),
                'summary': json.loads(r[4]) if r[4] else None,
            }
            for r in rows
        ]
