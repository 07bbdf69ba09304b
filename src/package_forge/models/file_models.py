"""Models for project files and file collections."""

from collections.abc import Iterable, Mapping

from pydantic import BaseModel, ConfigDict, Field


class FileRecord(BaseModel):
    """A single file in a project snapshot, addressed by its path."""

    model_config = ConfigDict(frozen=True)

    path: str = Field(min_length=1)  # Unique key within a project
    content: str


# One complete project snapshot. Order is irrelevant; paths are unique.
FileCollection = list[FileRecord]


def index_files(files: Iterable[FileRecord]) -> dict[str, str]:
    """Build a path -> content mapping from a file collection.

    Args:
        files: File records forming one snapshot.

    Returns:
        Dict mapping each path to its content, in input order.

    Raises:
        ValueError: If two records share the same path.
    """
    mapping: dict[str, str] = {}
    for record in files:
        if record.path in mapping:
            raise ValueError(f"Duplicate file path in collection: '{record.path}'")
        mapping[record.path] = record.content
    return mapping


def files_from_mapping(mapping: Mapping[str, str]) -> FileCollection:
    """Flatten a path -> content mapping back into file records."""
    return [FileRecord(path=path, content=content) for path, content in mapping.items()]


def copy_files(files: Iterable[FileRecord]) -> FileCollection:
    """Return an independent copy of a file collection."""
    return [FileRecord(path=record.path, content=record.content) for record in files]
