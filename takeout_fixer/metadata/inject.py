import io
import logging
import os
import shutil
import subprocess
import tempfile
from datetime import timezone
from pathlib import Path, PurePosixPath
from typing import BinaryIO, Dict, List, Optional, Tuple

import piexif
from PIL import Image
from PIL.TiffImagePlugin import IFDRational

from .. import config
from ..exceptions import InjectionError
from ..models import GeoLocation, MetadataRecord
from .extract import EmbeddedMetadata, MetadataExtractor

# Pillow tag ids
_TAG_IMAGE_DESCRIPTION = 0x010E
_TAG_DATETIME = 0x0132
_TAG_EXIF_IFD = 0x8769
_TAG_GPS_IFD = 0x8825
_TAG_DATETIME_ORIGINAL = 0x9003
_TAG_DATETIME_DIGITIZED = 0x9004

_VERIFIED_EXTS = {'.jpg', '.jpeg', '.jpe'}


def to_dms(decimal: float) -> Tuple[int, int, float]:
    """Decimal degrees -> (degrees, minutes, seconds), sign dropped."""
    value = abs(decimal)
    degrees = int(value)
    minutes_float = (value - degrees) * 60
    minutes = int(minutes_float)
    seconds = (minutes_float - minutes) * 60
    return degrees, minutes, seconds


def to_dms_rationals(decimal: float) -> Tuple[Tuple[int, int], ...]:
    """EXIF rational triple, seconds kept to the millisecond."""
    degrees, minutes, seconds = to_dms(decimal)
    millis = int(round(seconds * 1000))
    if millis >= 60000:
        millis -= 60000
        minutes += 1
    if minutes >= 60:
        minutes -= 60
        degrees += 1
    return ((degrees, 1), (minutes, 1), (millis, 1000))


def exif_timestamp(record: MetadataRecord) -> Optional[str]:
    if record.capture_time is None:
        return None
    return record.capture_time.astimezone(timezone.utc).strftime(config.EXIF_DATETIME_FORMAT)


class TempFileReader:
    """Read handle on a scratch file that removes the file when closed."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._fh = open(self.path, 'rb')

    def read(self, size: int = -1) -> bytes:
        return self._fh.read(size)

    def readable(self) -> bool:
        return True

    def close(self):
        self._fh.close()
        self.path.unlink(missing_ok=True)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class ExifInjector:
    """
    Writes a MetadataRecord into a media container.

    Strategies:
      - JPEG/WebP: 'piexif' (rewrites the APP1/EXIF chunk, pixels untouched).
      - PNG/TIFF:  'Pillow' (re-saved with an EXIF block).
      - Video/HEIC: 'exiftool' (external, requires system install).

    Every failure surfaces as InjectionError so the caller can fall back to
    the original bytes.
    """

    def __init__(self,
                 exiftool: str = "exiftool",
                 scratch_dir: Optional[Path] = None,
                 verify: bool = True):
        self.exiftool = exiftool
        self.scratch_dir = scratch_dir
        self.verify = verify
        self.extractor = MetadataExtractor(exiftool)

    def inject(self, stream: BinaryIO, record: MetadataRecord, filename: str) -> BinaryIO:
        ext = PurePosixPath(filename).suffix.lower()

        if ext in config.EXIFTOOL_EXTS:
            return self._inject_exiftool(stream, record, filename, ext)

        if ext in config.PIEXIF_EXTS:
            data = self._inject_piexif(stream.read(), record, filename)
        elif ext in config.PILLOW_EXIF_EXTS:
            data = self._inject_pillow(stream.read(), record, filename)
        else:
            raise InjectionError(f"{filename}: no metadata writer for '{ext or filename}' files")

        if self.verify and ext in _VERIFIED_EXTS:
            self._verify(data, record, filename)
        return io.BytesIO(data)

    # --- piexif ---

    def _inject_piexif(self, data: bytes, record: MetadataRecord, filename: str) -> bytes:
        try:
            exif_dict = piexif.load(data)
        except Exception as e:
            logging.debug(f"Existing EXIF in {filename} unreadable, starting fresh: {e}")
            exif_dict = self._empty_exif()

        self._apply_piexif_fields(exif_dict, record)
        try:
            exif_bytes = piexif.dump(exif_dict)
        except Exception as e:
            # Vendor tags piexif cannot re-encode; keep only what we set
            logging.debug(f"Dropping unencodable EXIF tags from {filename}: {e}")
            exif_dict = self._empty_exif()
            self._apply_piexif_fields(exif_dict, record)
            try:
                exif_bytes = piexif.dump(exif_dict)
            except Exception as e2:
                raise InjectionError(f"{filename}: cannot encode EXIF: {e2}") from e2

        out = io.BytesIO()
        try:
            piexif.insert(exif_bytes, data, out)
        except Exception as e:
            raise InjectionError(f"{filename}: cannot insert EXIF: {e}") from e
        return out.getvalue()

    def _apply_piexif_fields(self, exif_dict: Dict, record: MetadataRecord):
        for ifd in ("0th", "Exif", "GPS", "1st"):
            if not isinstance(exif_dict.get(ifd), dict):
                exif_dict[ifd] = {}

        stamp = exif_timestamp(record)
        if stamp:
            raw = stamp.encode('ascii')
            exif_dict["Exif"][piexif.ExifIFD.DateTimeOriginal] = raw
            exif_dict["Exif"][piexif.ExifIFD.DateTimeDigitized] = raw
            exif_dict["0th"][piexif.ImageIFD.DateTime] = raw

        if record.location:
            exif_dict["GPS"].update(self._piexif_gps(record.location))

        if record.description:
            exif_dict["0th"][piexif.ImageIFD.ImageDescription] = record.description.encode('utf-8')

    def _piexif_gps(self, geo: GeoLocation) -> Dict[int, object]:
        gps = {
            piexif.GPSIFD.GPSVersionID: (2, 2, 0, 0),
            piexif.GPSIFD.GPSLatitudeRef: b'N' if geo.latitude >= 0 else b'S',
            piexif.GPSIFD.GPSLatitude: to_dms_rationals(geo.latitude),
            piexif.GPSIFD.GPSLongitudeRef: b'E' if geo.longitude >= 0 else b'W',
            piexif.GPSIFD.GPSLongitude: to_dms_rationals(geo.longitude),
        }
        if geo.altitude:
            gps[piexif.GPSIFD.GPSAltitudeRef] = 0 if geo.altitude >= 0 else 1
            gps[piexif.GPSIFD.GPSAltitude] = (int(round(abs(geo.altitude) * 1000)), 1000)
        return gps

    @staticmethod
    def _empty_exif() -> Dict:
        return {"0th": {}, "Exif": {}, "GPS": {}, "1st": {}, "thumbnail": None}

    # --- Pillow ---

    def _inject_pillow(self, data: bytes, record: MetadataRecord, filename: str) -> bytes:
        out = io.BytesIO()
        try:
            with Image.open(io.BytesIO(data)) as img:
                fmt = img.format
                exif = img.getexif()

                stamp = exif_timestamp(record)
                if stamp:
                    exif[_TAG_DATETIME] = stamp
                    exif_ifd = dict(exif.get_ifd(_TAG_EXIF_IFD))
                    exif_ifd[_TAG_DATETIME_ORIGINAL] = stamp
                    exif_ifd[_TAG_DATETIME_DIGITIZED] = stamp
                    exif[_TAG_EXIF_IFD] = exif_ifd

                if record.location:
                    gps_ifd = dict(exif.get_ifd(_TAG_GPS_IFD))
                    gps_ifd.update(self._pillow_gps(record.location))
                    exif[_TAG_GPS_IFD] = gps_ifd

                if record.description:
                    exif[_TAG_IMAGE_DESCRIPTION] = record.description

                img.save(out, format=fmt, exif=exif)
        except (OSError, ValueError, SyntaxError, Image.DecompressionBombError) as e:
            # Pillow raises SyntaxError for some malformed headers
            raise InjectionError(f"{filename}: cannot rewrite image: {e}") from e
        return out.getvalue()

    def _pillow_gps(self, geo: GeoLocation) -> Dict[int, object]:
        def rationals(decimal):
            return tuple(IFDRational(n, d) for n, d in to_dms_rationals(decimal))

        gps = {
            piexif.GPSIFD.GPSLatitudeRef: 'N' if geo.latitude >= 0 else 'S',
            piexif.GPSIFD.GPSLatitude: rationals(geo.latitude),
            piexif.GPSIFD.GPSLongitudeRef: 'E' if geo.longitude >= 0 else 'W',
            piexif.GPSIFD.GPSLongitude: rationals(geo.longitude),
        }
        if geo.altitude:
            gps[piexif.GPSIFD.GPSAltitudeRef] = b'\x00' if geo.altitude >= 0 else b'\x01'
            gps[piexif.GPSIFD.GPSAltitude] = IFDRational(int(round(abs(geo.altitude) * 1000)), 1000)
        return gps

    # --- exiftool ---

    def _inject_exiftool(self, stream: BinaryIO, record: MetadataRecord, filename: str, ext: str) -> BinaryIO:
        args = self._exiftool_args(record, ext)
        if not args:
            raise InjectionError(f"{filename}: nothing to write")

        fd, tmp_name = tempfile.mkstemp(prefix=config.TEMP_PREFIX, suffix=ext, dir=self.scratch_dir)
        tmp = Path(tmp_name)
        try:
            with os.fdopen(fd, 'wb') as f:
                shutil.copyfileobj(stream, f, config.COPY_BUFFER_SIZE)

            cmd = [self.exiftool, "-overwrite_original", "-q", "-api", "QuickTimeUTC=1", *args, str(tmp)]
            try:
                result = subprocess.run(cmd, capture_output=True, text=True, timeout=config.EXIFTOOL_TIMEOUT)
            except FileNotFoundError as e:
                raise InjectionError(f"{filename}: '{self.exiftool}' not found on PATH") from e
            except subprocess.TimeoutExpired as e:
                raise InjectionError(f"{filename}: exiftool timed out") from e

            if result.returncode != 0:
                detail = (result.stderr or result.stdout).strip()
                raise InjectionError(f"{filename}: exiftool failed: {detail}")

            if self.verify:
                self._verify_video(tmp, record, filename)
            return TempFileReader(tmp)
        except BaseException:
            tmp.unlink(missing_ok=True)
            raise

    def _exiftool_args(self, record: MetadataRecord, ext: str) -> List[str]:
        args = []
        stamp = exif_timestamp(record)
        if stamp:
            if ext in config.VIDEO_EXTS:
                # QuickTimeUTC reads zone-less values as local time
                args.append(f"-AllDates={stamp}+00:00")
                args.append(f"-Keys:CreationDate={stamp}+00:00")
            else:
                args.append(f"-AllDates={stamp}")

        geo = record.location
        if geo:
            args += [
                f"-GPSLatitude={abs(geo.latitude)}",
                f"-GPSLatitudeRef={'N' if geo.latitude >= 0 else 'S'}",
                f"-GPSLongitude={abs(geo.longitude)}",
                f"-GPSLongitudeRef={'E' if geo.longitude >= 0 else 'W'}",
            ]
            if ext in config.VIDEO_EXTS:
                args.append(f"-Keys:GPSCoordinates={geo.latitude}, {geo.longitude}, {geo.altitude}")

        if record.description:
            args.append(f"-Description={record.description}")
        return args

    # --- Verification ---

    def _verify(self, data: bytes, record: MetadataRecord, filename: str):
        try:
            written = self.extractor.read_image(data)
        except Exception as e:
            raise InjectionError(f"{filename}: cannot read back metadata: {e}") from e
        self._check_capture_time(written, record, filename)

    def _verify_video(self, path: Path, record: MetadataRecord, filename: str):
        try:
            written = self.extractor.read_video(path)
        except (OSError, subprocess.SubprocessError, ValueError) as e:
            raise InjectionError(f"{filename}: cannot read back metadata: {e}") from e
        self._check_capture_time(written, record, filename)

    def _check_capture_time(self, written: EmbeddedMetadata, record: MetadataRecord, filename: str):
        stamp = exif_timestamp(record)
        if stamp and (written.capture_time is None
                      or written.capture_time.strftime(config.EXIF_DATETIME_FORMAT) != stamp):
            raise InjectionError(f"{filename}: capture time did not survive the rewrite")
