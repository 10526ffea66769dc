"""Logstore exception hierarchy.

This module defines traceable domain errors with clear boundaries.
Each subsystem raises a specific error type for debuggability.
"""

from __future__ import annotations


class LogStoreError(Exception):
    """Base exception for all logstore failures."""


class LogStoreConfigError(LogStoreError):
    """Raised for invalid runtime configuration."""


class InvalidFormatError(LogStoreError):
    """Raised when a file does not start with the expected prologue."""


class InvalidBlockFoundError(LogStoreError):
    """Raised for a corrupt block header or a block running past end-of-file.

    Attributes:
        offset: Byte offset of the offending block in the stream.
    """

    def __init__(self, message: str, offset: int) -> None:
        super().__init__(message)
        self.offset = offset


class TruncatedFileError(LogStoreError):
    """Raised when an event log ends in the middle of a cycle."""


class InvalidFormatVersionError(LogStoreError):
    """Raised when an event log uses an unsupported format version."""


class EventLogDecodeError(LogStoreError):
    """Raised when an event log cycle cannot be decoded."""


class NormalizeError(LogStoreError):
    """Raised for log normalization failures."""


class InvalidFollowupStreamError(NormalizeError):
    """Raised when a stream continued across files is inconsistent."""


class InvalidDigestError(LogStoreError):
    """Raised for strings that are not valid encoded digests."""


class InvalidPathError(LogStoreError):
    """Raised when a dataset path does not look like a digest."""


class InvalidIdentityMetadataError(LogStoreError):
    """Raised when identity metadata is malformed or disagrees with disk."""


class InvalidLayoutVersionError(InvalidIdentityMetadataError):
    """Raised when identity metadata has an unexpected layout version."""


class NoValueError(LogStoreError):
    """Raised when a metadata key has no value and no default is given."""


class MultipleValuesError(LogStoreError):
    """Raised when a single metadata value is requested from a multi-valued key."""


class ReadOnlyMetadataError(LogStoreError):
    """Raised when a derived metadata key is modified directly."""


class LogStoreStoreError(LogStoreError):
    """Raised for datastore layout and state failures."""


class DatasetNotFoundError(LogStoreStoreError):
    """Raised when no dataset matches a digest or digest prefix."""


class AmbiguousShortDigestError(LogStoreStoreError):
    """Raised when a short digest matches more than one dataset."""


class DatasetAlreadyExistsError(LogStoreStoreError):
    """Raised when an imported dataset is already in the store."""


class LogStoreImportError(LogStoreError):
    """Raised for raw directory classification and import failures."""


class StreamNotFoundError(LogStoreError):
    """Raised when a dataset has no canonical file for a requested stream."""
