"""Persistence layer: document store, chunking codec and project repository."""

from package_forge.storage.chunking import (
    CHUNK_THRESHOLD_BYTES,
    MAX_CHUNKS_PER_BATCH,
    ChunkedPayloadCodec,
    split_utf8,
)
from package_forge.storage.document_store import (
    DocumentStore,
    InMemoryDocumentStore,
    JsonFileDocumentStore,
    WriteBatch,
    document_size,
)
from package_forge.storage.exceptions import (
    ChunkIntegrityError,
    DocumentTooLargeError,
    ProjectNotFoundError,
    StorageError,
)
from package_forge.storage.project_repository import ProjectRepository

__all__ = [
    "CHUNK_THRESHOLD_BYTES",
    "MAX_CHUNKS_PER_BATCH",
    "ChunkIntegrityError",
    "ChunkedPayloadCodec",
    "DocumentStore",
    "DocumentTooLargeError",
    "InMemoryDocumentStore",
    "JsonFileDocumentStore",
    "ProjectNotFoundError",
    "ProjectRepository",
    "StorageError",
    "WriteBatch",
    "document_size",
    "split_utf8",
]
