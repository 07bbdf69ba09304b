"""Storage-specific exceptions."""

from package_forge.exceptions import ForgeError


class StorageError(ForgeError):
    """Base exception for storage operations."""


class DocumentTooLargeError(StorageError):
    """Raised when a single document exceeds the medium's size ceiling."""


class ChunkIntegrityError(StorageError):
    """Raised when a chunked payload is missing pieces or cannot be parsed."""


class ProjectNotFoundError(StorageError):
    """Raised when a project document does not exist."""
