"""
Custom exception hierarchy for the media browser.

Components contain their own failures at the operation boundary. These types
exist so that a stricter caller can opt into propagation, and so that
contained failures can still be reported with a category.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class ErrorKind(Enum):
    """Failure categories shared by every component."""
    TRANSIENT_IO = "transient_io"    # file vanished, permission revoked
    DECODE = "decode"                # bad EXIF, undecodable image/frame
    PERSISTENCE = "persistence"      # database write error
    MIGRATION = "migration"          # schema upgrade could not complete


class MediaBrowserError(Exception):
    """Base exception for all media browser errors."""

    def __init__(self, message: str, kind: Optional[ErrorKind] = None):
        super().__init__(message)
        self.kind = kind


class MetadataExtractionError(MediaBrowserError):
    """Raised when metadata cannot be extracted from a file."""
    pass


class CatalogError(MediaBrowserError):
    """Raised by a strict CatalogStore when an operation fails."""
    pass


class MigrationError(CatalogError):
    """Raised when the catalog schema cannot be upgraded."""
    pass


class ThumbnailError(MediaBrowserError):
    """Raised when a thumbnail cannot be decoded or written."""
    pass


class FileOperationError(MediaBrowserError):
    """Raised when file copy operations fail."""
    pass


class AccessGrantError(MediaBrowserError):
    """Raised when the OS access layer refuses to grant a directory."""
    pass


@dataclass(frozen=True)
class OperationResult:
    """Outcome of an operation that logs its own failures."""
    ok: bool
    kind: Optional[ErrorKind] = None
    message: str = ""

    def __bool__(self) -> bool:
        return self.ok

    @classmethod
    def success(cls) -> "OperationResult":
        return cls(True)

    @classmethod
    def failure(cls, kind: ErrorKind, message: str) -> "OperationResult":
        return cls(False, kind, message)

    def raise_for_failure(self) -> None:
        """Re-raise a contained failure as a CatalogError."""
        if self.ok:
            return
        if self.kind is ErrorKind.MIGRATION:
            raise MigrationError(self.message, self.kind)
        raise CatalogError(self.message, self.kind)
