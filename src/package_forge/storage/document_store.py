"""Document store with per-document and per-batch size limits.

Documents are JSON objects addressed by ``(collection, doc_id)``. Collection
names are slash-separated paths, so ``projects/<id>/checkpoints`` is a
sub-collection of the ``projects/<id>`` document. Limits mirror a hosted
document database: a hard ceiling per document and per write batch.
"""

import json
import os
import threading
import uuid
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal, Optional

from package_forge.storage.exceptions import DocumentTooLargeError, StorageError

MAX_DOCUMENT_BYTES = 1_048_576  # 1 MiB per document
MAX_BATCH_WRITES = 500
MAX_BATCH_BYTES = 10 * 1_048_576  # 10 MiB per batch commit
DOCUMENT_OVERHEAD_BYTES = 32


def _value_size(value: Any) -> int:
    if value is None or isinstance(value, bool):
        return 1
    if isinstance(value, (int, float)):
        return 8
    if isinstance(value, str):
        return len(value.encode("utf-8")) + 1
    if isinstance(value, Mapping):
        return sum(len(str(key).encode("utf-8")) + 1 + _value_size(item) for key, item in value.items())
    if isinstance(value, (list, tuple)):
        return sum(_value_size(item) for item in value)
    raise StorageError(f"Unsupported value type for storage: {type(value).__name__}")


def document_size(data: Mapping[str, Any]) -> int:
    """Estimate the stored size of a document in bytes.

    Strings count as their UTF-8 length plus one, numbers as eight bytes,
    booleans and nulls as one, plus a fixed per-document overhead.
    """
    return _value_size(data) + DOCUMENT_OVERHEAD_BYTES


def _validate_segment(segment: str, what: str) -> None:
    if not segment or segment in (".", "..") or "/" in segment or "\\" in segment:
        raise StorageError(f"Invalid {what}: '{segment}'")


def _validate_collection(collection: str) -> list[str]:
    parts = collection.split("/")
    for part in parts:
        _validate_segment(part, "collection path")
    return parts


def _plain(data: Mapping[str, Any]) -> dict[str, Any]:
    """Deep-copy a document through JSON, rejecting non-JSON values."""
    try:
        return json.loads(json.dumps(data, ensure_ascii=False))
    except (TypeError, ValueError) as e:
        raise StorageError(f"Document is not JSON-serialisable: {e}") from e


@dataclass(frozen=True)
class WriteOp:
    kind: Literal["set", "update", "delete"]
    collection: str
    doc_id: str
    data: Optional[dict[str, Any]] = None


@dataclass
class WriteBatch:
    """Group of writes committed together.

    Call ``commit()`` once; the batch is empty afterwards and may be reused.
    """

    store: "DocumentStore"
    ops: list[WriteOp] = field(default_factory=list)

    def set(self, collection: str, doc_id: str, data: Mapping[str, Any]) -> "WriteBatch":
        self.ops.append(WriteOp("set", collection, doc_id, _plain(data)))
        return self

    def update(self, collection: str, doc_id: str, data: Mapping[str, Any]) -> "WriteBatch":
        self.ops.append(WriteOp("update", collection, doc_id, _plain(data)))
        return self

    def delete(self, collection: str, doc_id: str) -> "WriteBatch":
        self.ops.append(WriteOp("delete", collection, doc_id))
        return self

    def __len__(self) -> int:
        return len(self.ops)

    @property
    def size_bytes(self) -> int:
        return sum(document_size(op.data) for op in self.ops if op.data is not None)

    def commit(self) -> None:
        ops, self.ops = self.ops, []
        if ops:
            self.store.commit_batch(ops)


class DocumentStore(ABC):
    """Abstract document store. Subclasses implement reads and raw writes."""

    def __init__(
        self,
        max_document_bytes: int = MAX_DOCUMENT_BYTES,
        max_batch_writes: int = MAX_BATCH_WRITES,
        max_batch_bytes: int = MAX_BATCH_BYTES,
    ) -> None:
        self.max_document_bytes = max_document_bytes
        self.max_batch_writes = max_batch_writes
        self.max_batch_bytes = max_batch_bytes
        self._lock = threading.RLock()

    # --- Subclass hooks ---

    @abstractmethod
    def _read(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        """Return a stored document or None."""

    @abstractmethod
    def _scan(self, collection: str) -> dict[str, dict[str, Any]]:
        """Return every document directly inside a collection."""

    @abstractmethod
    def _write(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        """Store a document, replacing any existing one."""

    @abstractmethod
    def _remove(self, collection: str, doc_id: str) -> None:
        """Remove a document if present."""

    # --- Public API ---

    def new_id(self) -> str:
        return uuid.uuid4().hex

    def batch(self) -> WriteBatch:
        return WriteBatch(store=self)

    def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        """Return a copy of the document, or None if it does not exist."""
        _validate_collection(collection)
        _validate_segment(doc_id, "document id")
        with self._lock:
            data = self._read(collection, doc_id)
        return _plain(data) if data is not None else None

    def query(
        self,
        collection: str,
        where: Mapping[str, Any] | None = None,
        order_by: str | None = None,
        descending: bool = False,
    ) -> list[tuple[str, dict[str, Any]]]:
        """List documents in a collection, filtered by field equality.

        Args:
            collection: Collection path.
            where: Optional {field: value} equality filters.
            order_by: Optional field to sort on; documents missing the field sort first.
            descending: Sort direction.

        Returns:
            List of (doc_id, data) tuples.
        """
        _validate_collection(collection)
        with self._lock:
            docs = self._scan(collection)

        results = [
            (doc_id, _plain(data))
            for doc_id, data in docs.items()
            if not where or all(data.get(key) == value for key, value in where.items())
        ]
        if order_by is not None:
            results.sort(
                key=lambda item: (item[1].get(order_by) is not None, item[1].get(order_by), item[0]),
                reverse=descending,
            )
        else:
            results.sort(key=lambda item: item[0])
        return results

    def set(self, collection: str, doc_id: str, data: Mapping[str, Any]) -> None:
        self.batch().set(collection, doc_id, data).commit()

    def update(self, collection: str, doc_id: str, data: Mapping[str, Any]) -> None:
        self.batch().update(collection, doc_id, data).commit()

    def delete(self, collection: str, doc_id: str) -> None:
        self.batch().delete(collection, doc_id).commit()

    def commit_batch(self, ops: list[WriteOp]) -> None:
        """Validate and apply a group of writes.

        Raises:
            StorageError: If the batch exceeds the write-count or byte limits,
                or an update targets a missing document.
            DocumentTooLargeError: If any resulting document exceeds the
                per-document ceiling.
        """
        if len(ops) > self.max_batch_writes:
            raise StorageError(
                f"Batch has {len(ops)} writes, above the limit of {self.max_batch_writes}"
            )

        with self._lock:
            resolved: list[WriteOp] = []
            pending: dict[tuple[str, str], dict[str, Any] | None] = {}
            total_bytes = 0

            for op in ops:
                _validate_collection(op.collection)
                _validate_segment(op.doc_id, "document id")
                key = (op.collection, op.doc_id)

                if op.kind == "delete":
                    pending[key] = None
                    resolved.append(op)
                    continue

                data = dict(op.data or {})
                if op.kind == "update":
                    current = pending[key] if key in pending else self._read(*key)
                    if current is None:
                        raise StorageError(
                            f"Cannot update missing document {op.collection}/{op.doc_id}"
                        )
                    data = {**current, **data}

                size = document_size(data)
                if size > self.max_document_bytes:
                    raise DocumentTooLargeError(
                        f"Document {op.collection}/{op.doc_id} is {size} bytes, "
                        f"above the limit of {self.max_document_bytes}"
                    )
                total_bytes += size
                pending[key] = data
                resolved.append(WriteOp("set", op.collection, op.doc_id, data))

            if total_bytes > self.max_batch_bytes:
                raise StorageError(
                    f"Batch payload is {total_bytes} bytes, above the limit of {self.max_batch_bytes}"
                )

            for op in resolved:
                if op.kind == "delete":
                    self._remove(op.collection, op.doc_id)
                else:
                    self._write(op.collection, op.doc_id, op.data or {})


class InMemoryDocumentStore(DocumentStore):
    """Document store kept in process memory."""

    def __init__(self, **limits: int) -> None:
        super().__init__(**limits)
        self._collections: dict[str, dict[str, dict[str, Any]]] = {}

    def _read(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        return self._collections.get(collection, {}).get(doc_id)

    def _scan(self, collection: str) -> dict[str, dict[str, Any]]:
        return dict(self._collections.get(collection, {}))

    def _write(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        self._collections.setdefault(collection, {})[doc_id] = _plain(data)

    def _remove(self, collection: str, doc_id: str) -> None:
        docs = self._collections.get(collection)
        if docs is not None:
            docs.pop(doc_id, None)


class JsonFileDocumentStore(DocumentStore):
    """Document store persisting one JSON file per document under a directory.

    ``projects/abc`` is stored at ``<root>/projects/abc.json`` and its
    sub-collections live in ``<root>/projects/abc/``. Each document is
    replaced atomically; a batch is applied document by document.
    """

    def __init__(self, root_dir: str | Path, **limits: int) -> None:
        super().__init__(**limits)
        self.root = Path(root_dir).expanduser().resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _doc_path(self, collection: str, doc_id: str) -> Path:
        return self.root.joinpath(*_validate_collection(collection), f"{doc_id}.json")

    def _read(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        path = self._doc_path(collection, doc_id)
        if not path.is_file():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise StorageError(f"Failed to read document {collection}/{doc_id}: {e}") from e

    def _scan(self, collection: str) -> dict[str, dict[str, Any]]:
        directory = self.root.joinpath(*_validate_collection(collection))
        if not directory.is_dir():
            return {}
        docs: dict[str, dict[str, Any]] = {}
        for path in sorted(directory.glob("*.json")):
            data = self._read(collection, path.stem)
            if data is not None:
                docs[path.stem] = data
        return docs

    def _write(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        path = self._doc_path(collection, doc_id)
        tmp_path = path.with_suffix(".json.tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps(data, ensure_ascii=False), encoding="utf-8")
            os.replace(tmp_path, path)
        except OSError as e:
            raise StorageError(f"Failed to write document {collection}/{doc_id}: {e}") from e

    def _remove(self, collection: str, doc_id: str) -> None:
        path = self._doc_path(collection, doc_id)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to delete document {collection}/{doc_id}: {e}") from e
