"""
Custom exception hierarchy for the takeout fixer.

Every fault the reconciliation engine can recover from has its own type so
callers can turn it into a per-entry or per-volume outcome instead of
aborting the run.
"""


class TakeoutFixerError(Exception):
    """Base exception for all takeout fixer errors."""
    pass


class ArchiveDiscoveryError(TakeoutFixerError):
    """Raised when the input paths do not name any usable archive."""
    pass


class VolumeError(TakeoutFixerError):
    """Raised when an archive volume is unreadable, corrupt or truncated."""

    def __init__(self, archive, reason: str):
        self.archive = archive
        self.reason = reason
        super().__init__(f"{archive}: {reason}")


class CatalogError(TakeoutFixerError):
    """Raised when no archive volume could be enumerated at all."""
    pass


class SidecarParseError(TakeoutFixerError):
    """Raised when a sidecar JSON document cannot be parsed."""
    pass


class InjectionError(TakeoutFixerError):
    """Raised when metadata cannot be written into a media container."""
    pass


class OutputWriteError(TakeoutFixerError):
    """Raised when writing to the destination tree fails."""
    pass
