"""Transparent chunking of large JSON payloads across bounded documents.

A record is saved as a parent document holding the small ``base`` fields.
The ``large`` fields are serialised to one JSON string; when that string is
below the threshold it is stored inline on the parent, otherwise it is cut
into fixed-size pieces written to the ``<collection>/<doc_id>/chunks``
sub-collection and reassembled on load.

Every chunked save writes a fresh chunk set, tagged with its own id. The
parent names the set it points at, so the previous set stays intact until
the parent write succeeds.
"""

import json
import logging
from collections.abc import Mapping
from typing import Any

from package_forge.storage.document_store import DocumentStore
from package_forge.storage.exceptions import ChunkIntegrityError, StorageError

logger = logging.getLogger(__name__)

CHUNK_THRESHOLD_BYTES = 800_000  # Well under the 1 MiB document ceiling
MAX_CHUNKS_PER_BATCH = 10  # ~8 MB per batch commit
CHUNKS_SUBCOLLECTION = "chunks"

IS_CHUNKED_FIELD = "isChunked"
CHUNK_COUNT_FIELD = "chunkCount"
CHUNK_SET_FIELD = "chunkSetId"
_META_FIELDS = (IS_CHUNKED_FIELD, CHUNK_COUNT_FIELD, CHUNK_SET_FIELD)


def split_utf8(text: str, max_bytes: int) -> list[str]:
    """Split text into pieces whose UTF-8 encoding is at most max_bytes.

    Cuts never fall inside a multi-byte character, so every piece decodes
    on its own and the pieces concatenate back to the original text.
    """
    if max_bytes < 4:
        raise ValueError("max_bytes must be at least 4")

    encoded = text.encode("utf-8")
    pieces: list[str] = []
    start = 0
    while start < len(encoded):
        end = min(start + max_bytes, len(encoded))
        # Back off to a character boundary (continuation bytes are 10xxxxxx)
        while end < len(encoded) and (encoded[end] & 0xC0) == 0x80:
            end -= 1
        pieces.append(encoded[start:end].decode("utf-8"))
        start = end
    return pieces


def chunk_doc_id(chunk_set: str, index: int) -> str:
    return f"chunk_{chunk_set}_{index:06d}"


class ChunkedPayloadCodec:
    """Saves and loads records whose large fields may exceed a document."""

    def __init__(
        self,
        store: DocumentStore,
        threshold_bytes: int = CHUNK_THRESHOLD_BYTES,
        chunks_per_batch: int = MAX_CHUNKS_PER_BATCH,
    ) -> None:
        """Initialize the codec.

        Args:
            store: Document store to write to.
            threshold_bytes: Serialised size at which chunking starts; also
                the maximum UTF-8 size of each chunk.
            chunks_per_batch: Chunk writes per batch commit.
        """
        self.store = store
        self.threshold_bytes = threshold_bytes
        self.chunks_per_batch = max(1, chunks_per_batch)

    def chunk_collection(self, collection: str, doc_id: str) -> str:
        return f"{collection}/{doc_id}/{CHUNKS_SUBCOLLECTION}"

    def save(
        self,
        collection: str,
        doc_id: str,
        base_fields: Mapping[str, Any],
        large_fields: Mapping[str, Any],
    ) -> int:
        """Save a record, chunking the large fields when needed.

        Chunk documents are committed first, in batches, under a new chunk
        set id, and the parent is written last. Until the parent write
        succeeds the stored record still points at its previous, untouched
        chunk set, so a failed save leaves the old record loadable. Chunks
        of any other set are removed afterwards.

        Args:
            collection: Parent collection path.
            doc_id: Parent document id.
            base_fields: Small fields stored on the parent document.
            large_fields: Fields that may be large; any JSON-serialisable values.

        Returns:
            Number of chunk documents written (0 when stored inline).

        Raises:
            StorageError: If the fields use reserved names, are not
                serialisable, or a write fails.
        """
        reserved = [name for name in _META_FIELDS if name in base_fields or name in large_fields]
        if reserved:
            raise StorageError(f"Reserved field names used: {', '.join(reserved)}")

        try:
            payload = json.dumps(dict(large_fields), ensure_ascii=False, separators=(",", ":"))
        except (TypeError, ValueError) as e:
            raise StorageError(f"Large fields are not JSON-serialisable: {e}") from e

        payload_bytes = len(payload.encode("utf-8"))
        chunk_collection = self.chunk_collection(collection, doc_id)

        if payload_bytes < self.threshold_bytes:
            parent = {**base_fields, **large_fields, IS_CHUNKED_FIELD: False, CHUNK_COUNT_FIELD: 0}
            self.store.set(collection, doc_id, parent)
            self._delete_stale_chunks(chunk_collection, keep_set=None)
            return 0

        chunk_set = self.store.new_id()
        pieces = split_utf8(payload, self.threshold_bytes)
        logger.debug(
            "Chunking %s/%s: %d bytes into %d chunks (set %s)",
            collection,
            doc_id,
            payload_bytes,
            len(pieces),
            chunk_set,
        )

        batch = self.store.batch()
        for index, piece in enumerate(pieces):
            batch.set(
                chunk_collection,
                chunk_doc_id(chunk_set, index),
                {CHUNK_SET_FIELD: chunk_set, "index": index, "content": piece},
            )
            if len(batch) >= self.chunks_per_batch:
                batch.commit()

        parent = {
            **base_fields,
            IS_CHUNKED_FIELD: True,
            CHUNK_COUNT_FIELD: len(pieces),
            CHUNK_SET_FIELD: chunk_set,
        }
        if len(batch) and batch.size_bytes + self.threshold_bytes > self.store.max_batch_bytes:
            batch.commit()
        batch.set(collection, doc_id, parent)
        batch.commit()

        self._delete_stale_chunks(chunk_collection, keep_set=chunk_set)
        return len(pieces)

    def load(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        """Load a record and reassemble its large fields.

        Returns:
            The merged fields (base fields overlaid by large fields), without
            chunking metadata, or None if the parent does not exist.

        Raises:
            ChunkIntegrityError: If chunks are missing, out of sequence, or
                the reassembled payload is not a valid JSON object.
        """
        parent = self.store.get(collection, doc_id)
        if parent is None:
            return None

        is_chunked = bool(parent.get(IS_CHUNKED_FIELD, False))
        chunk_count = int(parent.get(CHUNK_COUNT_FIELD, 0) or 0)
        base = {key: value for key, value in parent.items() if key not in _META_FIELDS}

        if not is_chunked:
            return base

        chunks = self.store.query(
            self.chunk_collection(collection, doc_id),
            where={CHUNK_SET_FIELD: parent.get(CHUNK_SET_FIELD)},
            order_by="index",
        )
        indexes = [data.get("index") for _, data in chunks]
        if indexes[:chunk_count] != list(range(chunk_count)):
            missing = sorted(set(range(chunk_count)) - {i for i in indexes if isinstance(i, int)})
            raise ChunkIntegrityError(
                f"Record {collection}/{doc_id} expects {chunk_count} chunks; "
                f"missing or out-of-sequence chunk indexes: {missing or indexes}"
            )

        pieces = []
        for _, data in chunks[:chunk_count]:
            content = data.get("content")
            if not isinstance(content, str):
                raise ChunkIntegrityError(
                    f"Chunk {data.get('index')} of {collection}/{doc_id} has no content"
                )
            pieces.append(content)

        try:
            large = json.loads("".join(pieces))
        except json.JSONDecodeError as e:
            raise ChunkIntegrityError(
                f"Failed to parse reassembled payload for {collection}/{doc_id}: {e}"
            ) from e
        if not isinstance(large, dict):
            raise ChunkIntegrityError(
                f"Reassembled payload for {collection}/{doc_id} is not an object"
            )

        return {**base, **large}

    def delete(self, collection: str, doc_id: str) -> None:
        """Delete a record and all of its chunks."""
        chunk_collection = self.chunk_collection(collection, doc_id)
        batch = self.store.batch()
        for chunk_id, _ in self.store.query(chunk_collection):
            batch.delete(chunk_collection, chunk_id)
            if len(batch) >= self.store.max_batch_writes - 1:
                batch.commit()
        batch.delete(collection, doc_id)
        batch.commit()

    def _delete_stale_chunks(self, chunk_collection: str, keep_set: str | None) -> None:
        """Remove chunks not in keep_set. Failures are logged, not raised."""
        try:
            stale = [
                chunk_id
                for chunk_id, data in self.store.query(chunk_collection)
                if keep_set is None or data.get(CHUNK_SET_FIELD) != keep_set
            ]
            if not stale:
                return
            batch = self.store.batch()
            for chunk_id in stale:
                batch.delete(chunk_collection, chunk_id)
                if len(batch) >= self.store.max_batch_writes:
                    batch.commit()
            batch.commit()
        except StorageError as e:
            logger.warning("Failed to remove stale chunks in %s: %s", chunk_collection, e)
