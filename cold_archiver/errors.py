"""Exception taxonomy for the archive transfer engine."""

from typing import Optional


class ArchiverError(Exception):
    """Base class for every error raised by cold_archiver."""


# ---------------------------------------------------------------------------
# Local chunk set
# ---------------------------------------------------------------------------

class ChunkSetError(ArchiverError):
    """The local chunk set cannot be trusted and must be rebuilt."""


class SplitError(ChunkSetError):
    """The external Splitter failed or left incomplete output."""


class ChecksumMismatchError(ChunkSetError):
    """A chunk file does not match its manifest entry (or has none)."""


class ManifestError(ChunkSetError):
    """The manifest could not be written."""


# ---------------------------------------------------------------------------
# Remote side
# ---------------------------------------------------------------------------

class StoreError(ArchiverError):
    """An object-store call failed."""


class SessionResolutionError(ArchiverError):
    """No multipart session could be found or created for an archive key."""


class PartUploadError(ArchiverError):
    """A part could not be uploaded. Already uploaded parts stay remote.

    ``part_number`` is None when the failure was not tied to one part, such
    as listing the session's parts.
    """

    def __init__(self, message: str, part_number: Optional[int] = None) -> None:
        super().__init__(message)
        self.part_number = part_number


class CompletionError(ArchiverError):
    """The part list is incomplete or the store refused to complete it."""


class VerificationFailure(ArchiverError):
    """The remote object does not match the local chunk set."""


# ---------------------------------------------------------------------------
# Run-level
# ---------------------------------------------------------------------------

class PreconditionError(ArchiverError):
    """Something the whole run depends on is missing."""


class AlreadyRunningError(ArchiverError):
    """Another process holds the run lock for the same bucket and sources."""
