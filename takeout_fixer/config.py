"""
Configuration constants for the takeout fixer.
"""

# --- File Type Definitions ---
IMAGE_EXTS = {'.jpg', '.jpeg', '.jpe', '.png', '.gif', '.webp', '.heic', '.heif',
              '.tif', '.tiff', '.bmp', '.dng', '.cr2', '.nef', '.arw', '.raw'}
VIDEO_EXTS = {'.mp4', '.mov', '.m4v', '.avi', '.mkv', '.webm', '.3gp', '.mts',
              '.m2ts', '.mpg', '.mpeg', '.wmv', '.mp'}
SIDECAR_EXT = '.json'

# Extension to Kind Mapping
EXT_TO_KIND = {}
for ext in IMAGE_EXTS: EXT_TO_KIND[ext] = 'image'
for ext in VIDEO_EXTS: EXT_TO_KIND[ext] = 'video'
EXT_TO_KIND[SIDECAR_EXT] = 'sidecar'

# Album-level JSON files that describe a folder, not a media file
ALBUM_METADATA_NAMES = {
    'metadata.json',
    'print-subscriptions.json',
    'shared_album_comments.json',
    'user-generated-memory-titles.json',
}

# --- Metadata Injection ---
# Containers whose EXIF block piexif can rewrite in place
PIEXIF_EXTS = {'.jpg', '.jpeg', '.jpe', '.webp'}
# Containers re-saved through Pillow with an EXIF block
PILLOW_EXIF_EXTS = {'.png', '.tif', '.tiff'}
# Containers handed to exiftool
EXIFTOOL_EXTS = {'.mp4', '.mov', '.m4v', '.3gp', '.heic', '.heif'}

EXIF_DATETIME_FORMAT = "%Y:%m:%d %H:%M:%S"

# Priority list for reading capture dates back (exifread tag names)
DATE_TAGS = [
    'EXIF DateTimeOriginal',
    'EXIF DateTimeDigitized',
    'Image DateTime',
]

EXIFTOOL_TIMEOUT = 120  # seconds per file

# --- Archive Input ---
ZIP_SUFFIXES = ('.zip',)
TAR_SUFFIXES = ('.tar.gz', '.tgz', '.tar')
ARCHIVE_SUFFIXES = ZIP_SUFFIXES + TAR_SUFFIXES

TAKEOUT_ROOT = "Takeout"
DEFAULT_MEDIA_ROOT = "Google Photos"
DEFAULT_OUTPUT_DIR = "takeout-fixed"

# --- Hashing & Performance ---
# Outputs smaller than this are fingerprinted fully. Larger ones get a Sparse Hash.
SPARSE_HASH_THRESHOLD = 5 * 1024 * 1024  # 5 MB
HASH_CHUNK_SIZE = 64 * 1024  # 64 KB chunks for reading
SPARSE_SAMPLE_SIZE = 4096

# Bounded buffer for streaming archive entries to disk
COPY_BUFFER_SIZE = 1024 * 1024  # 1 MB

# Parallel output workers (each holds one open archive reader)
DEFAULT_WORKERS = 3

# --- Output ---
STATE_DB_NAME = "takeout_fixer.db"
LOG_NAME = "takeout_fixer.log"
SUMMARY_NAME = "takeout_fixer_summary.json"
REPORT_CSV_NAME = "takeout_fixer_report.csv"
STATE_FILE_NAMES = {STATE_DB_NAME, LOG_NAME, SUMMARY_NAME, REPORT_CSV_NAME}

TEMP_PREFIX = ".tfx-"
TEMP_SUFFIX = ".part"

# --- Exit Codes ---
EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_WARNINGS = 2
