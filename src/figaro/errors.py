"""Exception taxonomy for the sync and push core."""

from __future__ import annotations


class FigaroError(Exception):
    """Base class for all errors raised by the figaro package."""


class SourceFetchError(FigaroError):
    """A chat API call failed."""


class StorageError(FigaroError):
    """A storage read failed."""


class StorageWriteError(StorageError):
    """A storage write failed."""


class MalformedRecord(FigaroError):
    """A single stored row could not be decoded.

    Args:
        key: Identifier of the offending row, for logging.
        reason: Human-readable decode failure.
    """

    def __init__(self, key: object, reason: str) -> None:
        super().__init__(f"Malformed record {key!r}: {reason}")
        self.key = key
        self.reason = reason


class SerializationError(FigaroError):
    """The classified view could not be serialised."""
