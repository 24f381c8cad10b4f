import argparse
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import List, Optional

from .core import TakeoutFixerApp
from .exceptions import TakeoutFixerError
from .matching.rules import DEFAULT_RULES_VERSION, RULESETS, get_rules
from .scanning.discovery import discover_archives
from . import config

def setup_logging(dest_root: Path, verbose: bool, to_file: bool = True):
    """Sets up logging to both console and a file in the destination."""
    log_level = logging.DEBUG if verbose else logging.INFO

    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if to_file:
        # Create dest root if it doesn't exist so we can log there
        dest_root.mkdir(parents=True, exist_ok=True)
        handlers.insert(0, logging.FileHandler(dest_root / config.LOG_NAME, encoding='utf-8'))

    logging.basicConfig(
        level=log_level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=handlers,
        force=True,
    )

    # Silence chatty libraries
    logging.getLogger("exifread").setLevel(logging.ERROR)
    logging.getLogger("PIL").setLevel(logging.WARNING)

def parse_args(argv: Optional[List[str]] = None):
    p = argparse.ArgumentParser(
        prog="takeout-fixer",
        description="Restores capture time, location and descriptions from Google Takeout sidecars into the media files.",
    )

    p.add_argument("paths", nargs="+", help="Archives (.zip, .tar, .tar.gz, .tgz), directories containing them, or glob patterns")
    p.add_argument("-o", "--output", type=Path, default=Path(config.DEFAULT_OUTPUT_DIR), help="Destination directory (default: %(default)s)")
    p.add_argument("-p", "--photo-dir", default=config.DEFAULT_MEDIA_ROOT, help="Media folder inside Takeout/ (default: %(default)s)")
    p.add_argument("-w", "--workers", type=int, default=config.DEFAULT_WORKERS, help="Parallel output workers (default: %(default)s)")

    p.add_argument("--rules", choices=sorted(RULESETS), default=DEFAULT_RULES_VERSION, help="File name mangling rules (default: %(default)s)")
    p.add_argument("--truncation-length", type=int, default=None, help="Override the rules' sidecar name truncation length")

    p.add_argument("-n", "--dry-run", action="store_true", help="Show what would be done without writing anything")
    p.add_argument("--no-progress", action="store_true", help="Disable the progress bar")
    p.add_argument("-v", "--verbose", "-d", "--debug", dest="verbose", action="store_true", help="Enable debug logging")

    args = p.parse_args(argv)
    if args.workers < 1:
        p.error("--workers must be at least 1")
    if args.truncation_length is not None and args.truncation_length < 1:
        p.error("--truncation-length must be positive")
    return args

def install_cancel_handler(cancel_event: threading.Event):
    """First Ctrl+C drains the run; a second one aborts it."""
    def handler(signum, frame):
        logging.warning("Interrupt received: finishing files in progress. Press Ctrl+C again to abort.")
        cancel_event.set()
        signal.signal(signal.SIGINT, signal.default_int_handler)

    signal.signal(signal.SIGINT, handler)

def main(argv: Optional[List[str]] = None):
    args = parse_args(argv)

    # 1. Setup
    dest_root = args.output.resolve()
    setup_logging(dest_root, args.verbose, to_file=not args.dry_run or dest_root.exists())

    logging.info("=== Takeout Fixer Started ===")
    logging.info(f"Dest:   {dest_root}")
    if args.dry_run:
        logging.info("DRY RUN: nothing will be written")

    # 2. Config
    try:
        rules = get_rules(args.rules, args.truncation_length)
        archives = discover_archives(args.paths)
    except (TakeoutFixerError, ValueError) as e:
        logging.error(str(e))
        sys.exit(config.EXIT_FAILURE)

    cancel_event = threading.Event()
    on_main_thread = threading.current_thread() is threading.main_thread()
    if on_main_thread:
        install_cancel_handler(cancel_event)

    # 3. Execution
    app = TakeoutFixerApp(dest_root)

    try:
        reporter = app.fix(
            archives=archives,
            media_root=args.photo_dir,
            rules=rules,
            max_workers=args.workers,
            dry_run=args.dry_run,
            show_progress=not args.no_progress,
            cancel_event=cancel_event,
        )
    except TakeoutFixerError as e:
        logging.error(f"Run aborted: {e}")
        sys.exit(config.EXIT_FAILURE)
    except KeyboardInterrupt:
        logging.warning("Operation cancelled by user.")
        sys.exit(config.EXIT_FAILURE)
    except Exception:
        logging.exception("Fatal error during reconciliation.")
        sys.exit(config.EXIT_FAILURE)
    finally:
        if on_main_thread:
            signal.signal(signal.SIGINT, signal.default_int_handler)

    sys.exit(reporter.exit_status())

if __name__ == "__main__":
    main()
