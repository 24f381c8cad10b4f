"""
Expands command-line inputs (archives, directories, glob patterns) into the
ordered list of volumes that make up one export.
"""
import glob
import logging
import os
import re
from pathlib import Path
from typing import Iterable, Iterator, List

from ..archive.sources import is_archive
from ..exceptions import ArchiveDiscoveryError

_GLOB_CHARS = re.compile(r'[*?\[]')
_DIGITS = re.compile(r'(\d+)')


def volume_sort_key(path: Path):
    """Natural order, so 'takeout-2.zip' sorts before 'takeout-10.zip'."""
    return [int(part) if part.isdigit() else part.lower() for part in _DIGITS.split(path.name)] + [str(path)]


def discover_archives(inputs: Iterable[str]) -> List[Path]:
    found = {}
    for raw in inputs:
        path = Path(raw).expanduser()

        if path.is_dir():
            matches = [p for p in iter_files(path) if is_archive(p)]
            if not matches:
                logging.warning(f"No archives found in {path}")
        elif path.is_file():
            if not is_archive(path):
                raise ArchiveDiscoveryError(f"Not a supported archive: {path}")
            matches = [path]
        elif _GLOB_CHARS.search(raw):
            matches = [Path(p) for p in glob.glob(os.path.expanduser(raw)) if is_archive(Path(p))]
            if not matches:
                logging.warning(f"Pattern matched no archives: {raw}")
        else:
            raise ArchiveDiscoveryError(f"Input not found: {raw}")

        for match in matches:
            found.setdefault(match.resolve(), match)

    if not found:
        raise ArchiveDiscoveryError("No archives found in the given inputs")

    archives = sorted(found, key=volume_sort_key)
    logging.info(f"Discovered {len(archives)} archive volume(s)")
    return archives


def iter_files(root: Path) -> Iterator[Path]:
    """Depth-first walker using os.scandir for speed."""
    stack = [root]
    while stack:
        current = stack.pop()
        try:
            with os.scandir(current) as it:
                entries = list(it)
        except OSError:
            logging.warning(f"Cannot list directory: {current}")
            continue

        # Sort for stable traversal order
        entries.sort(key=lambda e: e.name.lower())

        dirs = []
        for e in entries:
            if e.is_dir(follow_symlinks=False):
                dirs.append(Path(e.path))
            elif e.is_file(follow_symlinks=False):
                yield Path(e.path)

        # Push dirs to stack (reversed so we process A before Z)
        for d in reversed(dirs):
            stack.append(d)
