import io
import os
import threading

import piexif
import pytest

from takeout_fixer.archive.catalog import EntryCatalog
from takeout_fixer.exceptions import InjectionError, OutputWriteError
from takeout_fixer.matching.matcher import Matcher
from takeout_fixer.matching.naming import NameNormalizer
from takeout_fixer.matching.rules import get_rules
from takeout_fixer.metadata.inject import ExifInjector
from takeout_fixer.models import FaultKind, OutcomeStatus
from takeout_fixer.output.writer import OutputWriter
from takeout_fixer.reporting import RunReporter

ROOT = "Takeout/Google Photos/"
TAKEN = 1563032119


class CountingInjector:
    """Marks injected bytes instead of touching EXIF."""

    def __init__(self, fail=False):
        self.fail = fail
        self.calls = []

    def inject(self, stream, record, filename):
        self.calls.append(filename)
        if self.fail:
            raise InjectionError(f"{filename}: cannot write")
        return io.BytesIO(b"INJECTED:" + stream.read())


class FlakyStream(io.RawIOBase):
    """Yields one chunk, then fails like a truncated archive."""

    def __init__(self):
        self.calls = 0

    def readable(self):
        return True

    def read(self, size=-1):
        self.calls += 1
        if self.calls == 1:
            return b"partial-bytes"
        raise OSError("unexpected end of data")


@pytest.fixture
def dest(tmp_path):
    return tmp_path / "out"


@pytest.fixture
def setup(dest, manifest, memory_source):
    def _setup(*volumes, injector=None, rules=None, **kwargs):
        sources = {
            index: memory_source(f"v{index}.zip", {ROOT + path: data for path, data in files.items()})
            for index, files in enumerate(volumes, start=1)
        }
        catalog = EntryCatalog.build(sources, NameNormalizer(rules or get_rules()))
        results = Matcher(catalog).match_all()
        reporter = RunReporter({i: s.name for i, s in sources.items()})
        kwargs.setdefault("max_workers", 1)
        writer = OutputWriter(dest, manifest, reporter,
                              injector=injector if injector is not None else CountingInjector(),
                              show_progress=False, **kwargs)
        return writer, results, sources
    return _setup


def files_under(root):
    return sorted(
        os.path.relpath(os.path.join(d, f), root)
        for d, _, names in os.walk(root) for f in names
    )


def test_matched_entry_is_injected(setup, dest, make_sidecar, manifest):
    injector = CountingInjector()
    writer, results, _ = setup({"Trip/a.jpg": b"img", "Trip/a.jpg.json": make_sidecar(TAKEN)}, injector=injector)

    [outcome] = writer.write_all(results)

    assert outcome.status == OutcomeStatus.WRITTEN
    assert outcome.fault is None
    assert (dest / "Trip" / "a.jpg").read_bytes() == b"INJECTED:img"
    assert injector.calls == ["a.jpg"]
    assert manifest.lookup_output("Trip/a.jpg").status == OutcomeStatus.WRITTEN


def test_real_jpeg_gets_capture_time(setup, dest, make_jpeg, make_sidecar):
    writer, results, _ = setup(
        {"a.jpg": make_jpeg(), "a.jpg.json": make_sidecar(TAKEN, lat=46.7234, lon=17.3456)},
        injector=ExifInjector(),
    )
    [outcome] = writer.write_all(results)

    assert outcome.status == OutcomeStatus.WRITTEN
    exif = piexif.load((dest / "a.jpg").read_bytes())
    assert exif["Exif"][piexif.ExifIFD.DateTimeOriginal] == b"2019:07:13 15:35:19"
    assert exif["GPS"][piexif.GPSIFD.GPSLatitudeRef] == b"N"


def test_unmatched_entry_passes_through(setup, dest):
    injector = CountingInjector()
    writer, results, _ = setup({"lonely.mp4": b"video"}, injector=injector)

    [outcome] = writer.write_all(results)

    assert outcome.status == OutcomeStatus.WRITTEN_WITHOUT_METADATA
    assert outcome.fault == FaultKind.MISS
    assert (dest / "lonely.mp4").read_bytes() == b"video"
    assert injector.calls == []


def test_ambiguous_entries_are_copied_unchanged(setup, dest, make_sidecar):
    writer, results, _ = setup(
        {
            "longfilenamethatexceedsthetruncationlimit.jpg": b"one",
            "longfilenamethatexceedsthetruncated.jpg": b"two",
            "longfilenamethatexceedsthetrunc.json": make_sidecar(TAKEN),
        },
        rules=get_rules(truncation_length=31),
    )
    outcomes = writer.write_all(results)

    assert {o.status for o in outcomes} == {OutcomeStatus.SKIPPED_AMBIGUOUS}
    assert {o.fault for o in outcomes} == {FaultKind.AMBIGUITY}
    assert (dest / "longfilenamethatexceedsthetruncated.jpg").read_bytes() == b"two"


def test_malformed_sidecar_writes_without_metadata(setup, dest):
    writer, results, _ = setup({"a.jpg": b"img", "a.jpg.json": b"{broken"})
    [outcome] = writer.write_all(results)

    assert outcome.status == OutcomeStatus.WRITTEN_WITHOUT_METADATA
    assert outcome.fault == FaultKind.PARSE
    assert (dest / "a.jpg").read_bytes() == b"img"


def test_partial_sidecar_still_injects(setup, dest, make_sidecar):
    writer, results, _ = setup({"a.jpg": b"img", "a.jpg.json": make_sidecar(lat=1.0, lon=2.0)})
    [outcome] = writer.write_all(results)

    assert outcome.status == OutcomeStatus.WRITTEN
    assert outcome.fault == FaultKind.PARSE
    assert "missing photoTakenTime" in outcome.reason
    assert (dest / "a.jpg").read_bytes() == b"INJECTED:img"


def test_injection_failure_falls_back_to_original_bytes(setup, dest, make_sidecar):
    writer, results, _ = setup({"a.gif": b"GIF89a", "a.gif.json": make_sidecar(TAKEN)},
                               injector=CountingInjector(fail=True))
    [outcome] = writer.write_all(results)

    assert outcome.status == OutcomeStatus.WRITTEN_WITHOUT_METADATA
    assert outcome.fault == FaultKind.INJECTION
    assert (dest / "a.gif").read_bytes() == b"GIF89a"


def test_unreadable_entry_fails_with_volume_fault(setup, dest):
    writer, results, sources = setup({"a.jpg": b"a", "b.jpg": b"b"})
    sources[1].broken.add(ROOT + "a.jpg")

    outcomes = writer.write_all(results)

    assert [(o.relative_path, o.status, o.fault) for o in outcomes] == [
        ("a.jpg", OutcomeStatus.FAILED, FaultKind.VOLUME),
        ("b.jpg", OutcomeStatus.WRITTEN_WITHOUT_METADATA, FaultKind.MISS),
    ]
    assert files_under(dest) == ["b.jpg"]


def test_failed_copy_leaves_no_partial_output(setup, dest, manifest):
    writer, results, sources = setup({"Trip/a.mp4": b"video"})
    source = sources[1]
    real_open = source.open_entry

    def flaky_open(raw_path, offset=None):
        stream = real_open(raw_path, offset)
        stream._inner = FlakyStream()
        return stream

    source.open_entry = flaky_open
    [outcome] = writer.write_all(results)

    assert outcome.status == OutcomeStatus.FAILED
    assert outcome.fault == FaultKind.VOLUME
    assert not (dest / "Trip" / "a.mp4").exists()
    # No staged temp file survives either
    assert files_under(dest) == []
    assert manifest.lookup_output("Trip/a.mp4") is None


def test_rerun_reuses_unchanged_outputs(setup, dest, make_sidecar, manifest):
    files = {"a.jpg": b"img", "a.jpg.json": make_sidecar(TAKEN), "b.mp4": b"video"}
    injector = CountingInjector()
    writer, results, _ = setup(files, injector=injector)
    first = writer.write_all(results)
    before = {name: (dest / name).read_bytes() for name in files_under(dest)}

    writer, results, _ = setup(files, injector=injector)
    second = writer.write_all(results)

    assert injector.calls == ["a.jpg"]
    assert all(o.reused for o in second)
    assert [(o.status, o.fault) for o in second] == [(o.status, o.fault) for o in first]
    assert {name: (dest / name).read_bytes() for name in files_under(dest)} == before
    assert manifest.count_outputs() == 2


def test_modified_output_is_rewritten(setup, dest, make_sidecar):
    files = {"a.jpg": b"img", "a.jpg.json": make_sidecar(TAKEN)}
    injector = CountingInjector()
    writer, results, _ = setup(files, injector=injector)
    writer.write_all(results)

    (dest / "a.jpg").write_bytes(b"tampered")
    writer, results, _ = setup(files, injector=injector)
    [outcome] = writer.write_all(results)

    assert not outcome.reused
    assert injector.calls == ["a.jpg", "a.jpg"]
    assert (dest / "a.jpg").read_bytes() == b"INJECTED:img"


def test_identical_duplicate_written_once(setup, dest):
    writer, results, _ = setup({"a.jpg": b"same"}, {"a.jpg": b"same"})
    outcomes = writer.write_all(results)

    assert [(o.relative_path, o.volume) for o in outcomes] == [("a.jpg", 1)]
    assert writer.reporter.duplicates == [{"path": "a.jpg", "volume": 2, "kept_volume": 1}]


def test_conflicting_duplicate_is_a_failure(setup, dest):
    writer, results, _ = setup({"a.jpg": b"first"}, {"a.jpg": b"second copy"})
    writer.write_all(results)

    assert (dest / "a.jpg").read_bytes() == b"first"
    failed = [o for o in writer.reporter.outcomes if o.status == OutcomeStatus.FAILED]
    assert [(o.volume, o.fault) for o in failed] == [(2, FaultKind.DUPLICATE)]


def test_cancelled_run_writes_nothing_new(setup, dest):
    cancel = threading.Event()
    cancel.set()
    writer, results, _ = setup({"a.jpg": b"a", "b.jpg": b"b"}, cancel_event=cancel)

    outcomes = writer.write_all(results)

    assert {(o.status, o.fault) for o in outcomes} == {(OutcomeStatus.FAILED, FaultKind.CANCELLED)}
    assert files_under(dest) == []


def test_dry_run_plans_without_writing(setup, dest, make_sidecar, manifest):
    injector = CountingInjector()
    writer, results, _ = setup({"a.jpg": b"img", "a.jpg.json": make_sidecar(TAKEN), "b.mp4": b"v"},
                               injector=injector, dry_run=True)
    outcomes = writer.write_all(results)

    assert [o.status for o in outcomes] == [OutcomeStatus.WRITTEN, OutcomeStatus.WRITTEN_WITHOUT_METADATA]
    assert not dest.exists()
    assert injector.calls == []
    assert manifest.count_outputs() == 0


def test_parallel_workers_keep_task_order(setup, dest):
    files = {f"{i:02d}.jpg": bytes([i]) * 10 for i in range(12)}
    writer, results, _ = setup(files, max_workers=4)

    outcomes = writer.write_all(results)

    assert [o.relative_path for o in outcomes] == list(files)
    assert files_under(dest) == sorted(files)
    assert len(writer.reporter.outcomes) == 12


def test_dest_path_stays_inside_root(setup, dest):
    writer, _, _ = setup({"a.jpg": b"a"})

    assert writer.dest_path("Album/a.jpg") == dest / "Album" / "a.jpg"
    with pytest.raises(OutputWriteError):
        writer.dest_path("../escape.jpg")
    with pytest.raises(OutputWriteError):
        writer.dest_path("/etc/passwd")


class CrashingInjector(CountingInjector):
    def inject(self, stream, record, filename):
        self.calls.append(filename)
        raise RuntimeError("decoder blew up")


def test_unexpected_injector_error_fails_only_that_entry(setup, dest, make_sidecar, manifest):
    writer, results, _ = setup({"a.jpg": b"a", "a.jpg.json": make_sidecar(TAKEN), "b.jpg": b"b"},
                               injector=CrashingInjector())
    outcomes = writer.write_all(results)

    assert [(o.relative_path, o.status, o.fault) for o in outcomes] == [
        ("a.jpg", OutcomeStatus.FAILED, FaultKind.INJECTION),
        ("b.jpg", OutcomeStatus.WRITTEN_WITHOUT_METADATA, FaultKind.MISS),
    ]
    assert "RuntimeError" in outcomes[0].reason
    assert files_under(dest) == ["b.jpg"]
    assert manifest.lookup_output("a.jpg") is None
    assert len(writer.reporter.outcomes) == 2


def test_unexpected_copy_error_is_a_write_fault(setup, dest):
    writer, results, sources = setup({"a.mp4": b"v", "b.jpg": b"b"}, max_workers=2)
    source = sources[1]
    real_open = source.open_entry

    def exploding_open(raw_path, offset=None):
        if raw_path.endswith("a.mp4"):
            raise RuntimeError("codec table corrupt")
        return real_open(raw_path, offset)

    source.open_entry = exploding_open
    outcomes = writer.write_all(results)

    assert [(o.status, o.fault) for o in outcomes] == [
        (OutcomeStatus.FAILED, FaultKind.WRITE),
        (OutcomeStatus.WRITTEN_WITHOUT_METADATA, FaultKind.MISS),
    ]
    assert files_under(dest) == ["b.jpg"]


def test_cancel_during_run_finishes_in_flight_entry(setup, dest, make_sidecar, manifest):
    cancel = threading.Event()

    class CancellingInjector(CountingInjector):
        def inject(self, stream, record, filename):
            cancel.set()
            return super().inject(stream, record, filename)

    writer, results, _ = setup(
        {"a.jpg": b"a", "a.jpg.json": make_sidecar(TAKEN), "b.jpg": b"b", "c.jpg": b"c"},
        injector=CancellingInjector(), cancel_event=cancel,
    )
    outcomes = writer.write_all(results)

    assert [(o.relative_path, o.status, o.fault) for o in outcomes] == [
        ("a.jpg", OutcomeStatus.WRITTEN, None),
        ("b.jpg", OutcomeStatus.FAILED, FaultKind.CANCELLED),
        ("c.jpg", OutcomeStatus.FAILED, FaultKind.CANCELLED),
    ]
    assert (dest / "a.jpg").read_bytes() == b"INJECTED:a"
    assert manifest.lookup_output("a.jpg") is not None
    assert files_under(dest) == ["a.jpg"]
    assert list(dest.rglob(".tfx-*.part")) == []
