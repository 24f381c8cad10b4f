import logging
import threading
from pathlib import Path
from typing import Dict, Optional, Sequence

from .archive.catalog import EntryCatalog
from .archive.sources import ArchiveEntrySource, open_source
from .database.db import DBManager
from .database.ops import ManifestOps
from .exceptions import VolumeError
from .matching.matcher import Matcher
from .matching.naming import NameNormalizer
from .matching.rules import DEFAULT_RULES, NamingRules
from .metadata.inject import ExifInjector
from .metadata.sidecar import SidecarParser
from .models import VolumeFault
from .output.writer import OutputWriter
from .reporting import RunReporter
from . import config


class TakeoutFixerApp:
    def __init__(self, dest_root: Path):
        self.dest_root = Path(dest_root)
        self.db_path = self.dest_root / config.STATE_DB_NAME

    def fix(self,
            archives: Sequence[Path],
            media_root: str = config.DEFAULT_MEDIA_ROOT,
            rules: NamingRules = DEFAULT_RULES,
            max_workers: int = config.DEFAULT_WORKERS,
            dry_run: bool = False,
            show_progress: bool = True,
            cancel_event: Optional[threading.Event] = None,
            injector: Optional[ExifInjector] = None,
            use_title_hints: bool = True) -> RunReporter:
        """
        Executes the reconciliation pipeline over one export.
        1. Catalog (enumerate every volume)
        2. Match (media -> sidecar)
        3. Write (inject + atomic output, skipping unchanged outputs)
        4. Report (summary JSON, CSV, manifest run row)

        Raises CatalogError when no volume can be enumerated.
        """
        sources: Dict[int, ArchiveEntrySource] = {}
        early_faults = []
        for volume, path in enumerate(archives, start=1):
            try:
                sources[volume] = open_source(path)
            except VolumeError as e:
                early_faults.append(VolumeFault(volume, str(path), e.reason))

        try:
            # --- Step 1: Catalog ---
            normalizer = NameNormalizer(rules)
            logging.info(f"Cataloging {len(sources)} volume(s), media root '{media_root}', rules {rules.version}")
            catalog = EntryCatalog.build(sources, normalizer, media_root, max_workers)

            volumes = {volume: str(path) for volume, path in enumerate(archives, start=1)}
            reporter = RunReporter(volumes, dry_run=dry_run)
            for fault in early_faults + catalog.faults:
                reporter.record_volume_fault(fault)

            # --- Step 2: Matching ---
            parser = SidecarParser()
            matcher = Matcher(catalog, title_hint=parser.read_title if use_title_hints else None)
            results = matcher.match_all()
            for sidecar in matcher.unclaimed_sidecars():
                reporter.record_unused_sidecar(sidecar.relative_path)

            # --- Step 3: Output ---
            db = self._manifest_db(dry_run)
            with db as conn:
                manifest = ManifestOps(conn, db.write_lock)
                run_id = None if dry_run else manifest.start_run(list(volumes.values()))

                writer = OutputWriter(
                    dest_root=self.dest_root,
                    manifest=manifest,
                    reporter=reporter,
                    parser=parser,
                    injector=injector,
                    max_workers=max_workers,
                    cancel_event=cancel_event,
                    dry_run=dry_run,
                    show_progress=show_progress,
                )
                writer.write_all(results)
                reporter.finish()

                # --- Step 4: Reporting ---
                if not dry_run:
                    manifest.finish_run(run_id, reporter.summary())
                    logging.info(f"Manifest now tracks {manifest.count_outputs()} output(s)")
                    reporter.write_json(self.dest_root / config.SUMMARY_NAME)
                    reporter.write_csv(self.dest_root / config.REPORT_CSV_NAME)
        finally:
            for source in sources.values():
                source.close()

        reporter.log_summary()
        return reporter

    def _manifest_db(self, dry_run: bool) -> DBManager:
        # A dry run reads an existing manifest but never creates one
        if dry_run and not self.db_path.exists():
            return DBManager.in_memory()
        if not dry_run:
            self.dest_root.mkdir(parents=True, exist_ok=True)
        return DBManager(self.db_path)
