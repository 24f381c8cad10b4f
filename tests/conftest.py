import io
import json
import sqlite3
import tarfile
import zipfile
from pathlib import Path

import pytest
from PIL import Image

from takeout_fixer.archive.sources import ArchiveEntrySource, EntryInfo, EntryStream
from takeout_fixer.database.ops import ManifestOps
from takeout_fixer.database.schema import init_schema
from takeout_fixer.exceptions import VolumeError

ROOT = "Takeout/Google Photos/"


class MemorySource(ArchiveEntrySource):
    """Archive source backed by a dict, for tests that don't need real containers."""

    def __init__(self, name, files, fail_listing=None, broken=()):
        super().__init__(Path(name))
        self.files = dict(files)
        self.fail_listing = fail_listing
        self.broken = set(broken)
        self.opened = []

    def list_entries(self):
        for index, (path, data) in enumerate(self.files.items()):
            yield EntryInfo(path, len(data), index)
        if self.fail_listing:
            raise VolumeError(self.path, self.fail_listing)

    def open_entry(self, raw_path, offset=None):
        self.opened.append(raw_path)
        if raw_path in self.broken:
            raise VolumeError(self.path, f"cannot open {raw_path}")
        return EntryStream(io.BytesIO(self.files[raw_path]), self.path)


@pytest.fixture
def conn():
    """Returns an in-memory SQLite connection with the manifest schema initialized."""
    c = sqlite3.connect(":memory:", check_same_thread=False)
    init_schema(c)
    try:
        yield c
    finally:
        c.close()


@pytest.fixture
def manifest(conn):
    """Returns a ManifestOps instance attached to the in-memory DB."""
    return ManifestOps(conn)


@pytest.fixture
def make_jpeg():
    def _make(color=(200, 30, 30), size=(16, 16)):
        buf = io.BytesIO()
        Image.new("RGB", size, color).save(buf, format="JPEG")
        return buf.getvalue()
    return _make


@pytest.fixture
def make_png():
    def _make(color=(30, 200, 30), size=(16, 16)):
        buf = io.BytesIO()
        Image.new("RGB", size, color).save(buf, format="PNG")
        return buf.getvalue()
    return _make


@pytest.fixture
def make_sidecar():
    def _make(timestamp=None, lat=None, lon=None, alt=0.0, description="", title=None, geo_exif=None, **extra):
        doc = {"title": title or "", "description": description}
        if timestamp is not None:
            doc["photoTakenTime"] = {"timestamp": str(timestamp), "formatted": ""}
        if lat is not None:
            doc["geoData"] = {"latitude": lat, "longitude": lon, "altitude": alt,
                              "latitudeSpan": 0.0, "longitudeSpan": 0.0}
        if geo_exif is not None:
            doc["geoDataExif"] = geo_exif
        doc.update(extra)
        return json.dumps(doc).encode("utf-8")
    return _make


@pytest.fixture
def make_zip(tmp_path):
    def _make(name, files):
        path = tmp_path / name
        with zipfile.ZipFile(path, "w") as zf:
            for arcname, data in files.items():
                zf.writestr(arcname, data)
        return path
    return _make


@pytest.fixture
def make_tar(tmp_path):
    def _make(name, files, mode="w:gz"):
        path = tmp_path / name
        with tarfile.open(path, mode) as tf:
            for arcname, data in files.items():
                info = tarfile.TarInfo(arcname)
                info.size = len(data)
                tf.addfile(info, io.BytesIO(data))
        return path
    return _make


@pytest.fixture
def memory_source():
    return MemorySource
