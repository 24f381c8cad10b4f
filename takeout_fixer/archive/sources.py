"""
Archive entry sources: one physical archive volume exposed as a sequence of
(path, size, reader) records, whatever its container format.
"""
import logging
import tarfile
import threading
import zipfile
import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Dict, Iterator, List, Optional

from .. import config
from ..exceptions import VolumeError

# Errors a damaged or truncated container raises while being read
_READ_ERRORS = (zipfile.BadZipFile, zipfile.LargeZipFile, tarfile.TarError, zlib.error, EOFError, OSError)


@dataclass(frozen=True)
class EntryInfo:
    path: str
    size: int
    offset: int     # position of the entry in the container's listing


class EntryStream:
    """
    Read-only byte stream over one archive entry. Container errors surface
    as VolumeError so callers never depend on zipfile/tarfile internals.
    """

    def __init__(self, inner: BinaryIO, archive: Path):
        self._inner = inner
        self._archive = archive

    def read(self, size: int = -1) -> bytes:
        try:
            return self._inner.read(size)
        except _READ_ERRORS as e:
            raise VolumeError(self._archive, f"read failed: {e}") from e

    def readable(self) -> bool:
        return True

    def close(self):
        self._inner.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class ArchiveEntrySource:
    """
    Base class for one archive volume.

    Handles are opened per thread, so output workers can read entries of the
    same volume concurrently without sharing a file position.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._local = threading.local()
        self._handles: List = []
        self._handles_lock = threading.Lock()

    @property
    def name(self) -> str:
        return self.path.name

    def list_entries(self) -> Iterator[EntryInfo]:
        raise NotImplementedError

    def open_entry(self, raw_path: str, offset: Optional[int] = None) -> EntryStream:
        """Opens raw_path; offset, when given, picks one copy of a repeated name."""
        raise NotImplementedError

    def close(self):
        with self._handles_lock:
            handles, self._handles = self._handles, []
        for handle in handles:
            try:
                handle.close()
            except OSError as e:
                logging.debug(f"Failed to close handle for {self.path}: {e}")
        self._local = threading.local()

    def _thread_handle(self):
        handle = getattr(self._local, "handle", None)
        if handle is None:
            handle = self._open_handle()
            self._local.handle = handle
            with self._handles_lock:
                self._handles.append(handle)
        return handle

    def _open_handle(self):
        raise NotImplementedError

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def __repr__(self):
        return f"{type(self).__name__}({str(self.path)!r})"


class ZipEntrySource(ArchiveEntrySource):
    def list_entries(self) -> Iterator[EntryInfo]:
        try:
            with zipfile.ZipFile(self.path) as zf:
                infos = zf.infolist()
        except _READ_ERRORS as e:
            raise VolumeError(self.path, f"cannot read zip directory: {e}") from e

        for index, info in enumerate(infos):
            if info.is_dir():
                continue
            yield EntryInfo(info.filename, info.file_size, index)

    def open_entry(self, raw_path: str, offset: Optional[int] = None) -> EntryStream:
        try:
            zf = self._thread_handle()
            target = raw_path
            if offset is not None:
                infos = zf.infolist()
                if 0 <= offset < len(infos) and infos[offset].filename == raw_path:
                    target = infos[offset]
            return EntryStream(zf.open(target), self.path)
        except KeyError:
            raise VolumeError(self.path, f"no entry named {raw_path!r}") from None
        except _READ_ERRORS as e:
            raise VolumeError(self.path, f"cannot open {raw_path!r}: {e}") from e

    def _open_handle(self):
        return zipfile.ZipFile(self.path)


class TarEntrySource(ArchiveEntrySource):
    """
    Tar, tar.gz and tgz volumes. Member headers (which carry data offsets)
    are kept from enumeration so an entry can be opened without rescanning.
    """

    def __init__(self, path: Path):
        super().__init__(path)
        self._members: Dict[int, tarfile.TarInfo] = {}
        self._latest: Dict[str, int] = {}

    def list_entries(self) -> Iterator[EntryInfo]:
        try:
            with tarfile.open(self.path, mode="r:*") as tf:
                index = 0
                for member in tf:
                    if member.isfile():
                        self._members[index] = member
                        self._latest[member.name] = index
                        yield EntryInfo(member.name, member.size, index)
                    index += 1
        except _READ_ERRORS as e:
            raise VolumeError(self.path, f"cannot read tar stream: {e}") from e

    def open_entry(self, raw_path: str, offset: Optional[int] = None) -> EntryStream:
        if offset is None:
            offset = self._latest.get(raw_path)
        member = self._members.get(offset)
        if member is None or member.name != raw_path:
            raise VolumeError(self.path, f"no entry named {raw_path!r}")
        try:
            tf = self._thread_handle()
            fileobj = tf.extractfile(member)
        except _READ_ERRORS as e:
            raise VolumeError(self.path, f"cannot open {raw_path!r}: {e}") from e
        if fileobj is None:
            raise VolumeError(self.path, f"{raw_path!r} is not a regular file")
        return EntryStream(fileobj, self.path)

    def _open_handle(self):
        return tarfile.open(self.path, mode="r:*")


def is_archive(path: Path) -> bool:
    return path.name.lower().endswith(config.ARCHIVE_SUFFIXES)


def open_source(path: Path) -> ArchiveEntrySource:
    """Returns the entry source matching the archive's file name."""
    path = Path(path)
    name = path.name.lower()
    if name.endswith(config.ZIP_SUFFIXES):
        return ZipEntrySource(path)
    if name.endswith(config.TAR_SUFFIXES):
        return TarEntrySource(path)
    raise VolumeError(path, "unsupported archive format")
