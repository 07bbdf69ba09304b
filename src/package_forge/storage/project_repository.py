"""Persistence of projects, checkpoints and chat history.

Layout (collection paths)::

    projects/<project_id>                  project document (files chunked)
    projects/<project_id>/chunks           file payload chunks
    projects/<project_id>/checkpoints/<id> checkpoint documents (files chunked)
    projects/<project_id>/chatHistory/<id> chat messages
"""

import logging
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from package_forge.models import (
    ChatMessage,
    Checkpoint,
    FileCollection,
    FileRecord,
    Project,
    ProjectStatus,
    copy_files,
    utc_now,
)
from package_forge.storage.chunking import ChunkedPayloadCodec
from package_forge.storage.document_store import DocumentStore
from package_forge.storage.exceptions import ProjectNotFoundError, StorageError

logger = logging.getLogger(__name__)

PROJECTS_COLLECTION = "projects"
INITIAL_CHECKPOINT_MESSAGE = "Initial Version"
PROGRESS_LOG_MAX_CHARS = 200_000  # Keep only the tail of streamed progress


def _checkpoints_collection(project_id: str) -> str:
    return f"{PROJECTS_COLLECTION}/{project_id}/checkpoints"


def _chat_collection(project_id: str) -> str:
    return f"{PROJECTS_COLLECTION}/{project_id}/chatHistory"


def _timestamp(value: datetime) -> str:
    return value.isoformat()


def _files_payload(files: Iterable[FileRecord] | None) -> list[dict[str, str]] | None:
    if files is None:
        return None
    return [{"path": record.path, "content": record.content} for record in files]


def _files_from_payload(raw: Any) -> list[FileRecord]:
    if not raw:
        return []
    try:
        return [FileRecord(path=item["path"], content=item["content"]) for item in raw]
    except (KeyError, TypeError, ValueError) as e:
        raise StorageError(f"Stored file list is malformed: {e}") from e


class ProjectRepository:
    """Reads and writes project state through the chunking codec."""

    def __init__(self, store: DocumentStore, codec: ChunkedPayloadCodec | None = None) -> None:
        self.store = store
        self.codec = codec or ChunkedPayloadCodec(store)

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------

    def create_project(
        self,
        initial_requirements: str,
        user_id: str | None = None,
        name: str | None = None,
    ) -> Project:
        """Create a project document in the GENERATING state."""
        now = utc_now()
        project = Project(
            project_id=self.store.new_id(),
            name=name or f"New Project - {now.date().isoformat()}",
            initial_requirements=initial_requirements,
            user_id=user_id,
            files=None,
            status=ProjectStatus.GENERATING,
            generation_log="Initializing...",
            created_at=now,
            updated_at=now,
        )
        self.codec.save(
            PROJECTS_COLLECTION,
            project.project_id,
            self._project_base_fields(project),
            {"files": None},
        )
        logger.info("Created project %s", project.project_id)
        return project

    def get_project(self, project_id: str) -> Project | None:
        data = self.codec.load(PROJECTS_COLLECTION, project_id)
        if data is None:
            return None
        return self._project_from_doc(project_id, data)

    def require_project(self, project_id: str) -> Project:
        project = self.get_project(project_id)
        if project is None:
            raise ProjectNotFoundError(f"Project '{project_id}' not found")
        return project

    def list_projects(self, user_id: str | None = None) -> list[Project]:
        """Return projects, most recently updated first."""
        where = {"userId": user_id} if user_id is not None else None
        docs = self.store.query(PROJECTS_COLLECTION, where=where, order_by="updatedAt", descending=True)
        projects = []
        for project_id, _ in docs:
            project = self.get_project(project_id)
            if project is not None:
                projects.append(project)
        return projects

    def rename_project(self, project_id: str, new_name: str) -> None:
        self._require_doc(project_id)
        self.store.update(
            PROJECTS_COLLECTION,
            project_id,
            {"name": new_name, "updatedAt": _timestamp(utc_now())},
        )

    def update_generation_progress(self, project_id: str, progress_log: str) -> None:
        """Record streamed generation output for progress display."""
        self.store.update(
            PROJECTS_COLLECTION,
            project_id,
            {
                "generationLog": progress_log[-PROGRESS_LOG_MAX_CHARS:],
                "updatedAt": _timestamp(utc_now()),
            },
        )

    def finalize_generation(self, project_id: str, files: Iterable[FileRecord]) -> Checkpoint:
        """Store generated files, mark the project completed, add the initial checkpoint."""
        files = copy_files(files)
        checkpoint = Checkpoint(
            checkpoint_id=self.store.new_id(),
            message=INITIAL_CHECKPOINT_MESSAGE,
            files=tuple(files),
        )
        self.persist_checkpoint(project_id, checkpoint)
        self.persist_snapshot(
            project_id,
            files,
            status=ProjectStatus.COMPLETED.value,
            generationLog="Generation complete.",
            error="",
        )
        return checkpoint

    def fail_generation(self, project_id: str, error_message: str) -> None:
        self.store.update(
            PROJECTS_COLLECTION,
            project_id,
            {
                "status": ProjectStatus.FAILED.value,
                "error": error_message,
                "updatedAt": _timestamp(utc_now()),
            },
        )

    def delete_project(self, project_id: str) -> None:
        """Delete a project with its chunks, checkpoints and chat history."""
        for checkpoint_id, _ in self.store.query(_checkpoints_collection(project_id)):
            self.codec.delete(_checkpoints_collection(project_id), checkpoint_id)

        chat_collection = _chat_collection(project_id)
        batch = self.store.batch()
        for message_id, _ in self.store.query(chat_collection):
            batch.delete(chat_collection, message_id)
            if len(batch) >= self.store.max_batch_writes:
                batch.commit()
        batch.commit()

        self.codec.delete(PROJECTS_COLLECTION, project_id)
        logger.info("Deleted project %s", project_id)

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def persist_snapshot(self, project_id: str, files: Iterable[FileRecord], **fields: Any) -> None:
        """Replace the project's file collection.

        Extra keyword arguments are stored as base fields on the project
        document (e.g. ``status``).
        """
        current = self._require_doc(project_id)
        base = {
            key: value
            for key, value in current.items()
            if key not in ("files", "isChunked", "chunkCount")
        }
        base.update(fields)
        base["updatedAt"] = _timestamp(utc_now())
        self.codec.save(PROJECTS_COLLECTION, project_id, base, {"files": _files_payload(files)})

    def read_snapshot(self, project_id: str) -> FileCollection:
        data = self.codec.load(PROJECTS_COLLECTION, project_id)
        if data is None:
            raise ProjectNotFoundError(f"Project '{project_id}' not found")
        return _files_from_payload(data.get("files"))

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------

    def persist_checkpoint(self, project_id: str, checkpoint: Checkpoint) -> None:
        self.codec.save(
            _checkpoints_collection(project_id),
            checkpoint.checkpoint_id,
            {"message": checkpoint.message, "createdAt": _timestamp(checkpoint.created_at)},
            {"files": _files_payload(checkpoint.files)},
        )

    def delete_checkpoint(self, project_id: str, checkpoint_id: str) -> None:
        self.codec.delete(_checkpoints_collection(project_id), checkpoint_id)

    def get_checkpoint(self, project_id: str, checkpoint_id: str) -> Checkpoint | None:
        data = self.codec.load(_checkpoints_collection(project_id), checkpoint_id)
        if data is None:
            return None
        return self._checkpoint_from_doc(checkpoint_id, data)

    def list_checkpoints(self, project_id: str) -> list[Checkpoint]:
        """Return checkpoints newest first."""
        collection = _checkpoints_collection(project_id)
        docs = self.store.query(collection, order_by="createdAt", descending=True)
        checkpoints = []
        for checkpoint_id, _ in docs:
            checkpoint = self.get_checkpoint(project_id, checkpoint_id)
            if checkpoint is not None:
                checkpoints.append(checkpoint)
        return checkpoints

    # ------------------------------------------------------------------
    # Chat history
    # ------------------------------------------------------------------

    def add_chat_message(self, project_id: str, message: ChatMessage) -> None:
        self.store.set(
            _chat_collection(project_id),
            self.store.new_id(),
            {
                "role": message.role.value,
                "content": message.content,
                "timestamp": _timestamp(message.timestamp),
            },
        )

    def get_chat_history(self, project_id: str) -> list[ChatMessage]:
        """Return chat messages oldest first."""
        docs = self.store.query(_chat_collection(project_id), order_by="timestamp")
        return [ChatMessage.model_validate(data) for _, data in docs]

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_doc(self, project_id: str) -> dict[str, Any]:
        current = self.store.get(PROJECTS_COLLECTION, project_id)
        if current is None:
            raise ProjectNotFoundError(f"Project '{project_id}' not found")
        return current

    @staticmethod
    def _project_base_fields(project: Project) -> dict[str, Any]:
        fields: dict[str, Any] = {
            "name": project.name,
            "initialRequirements": project.initial_requirements,
            "status": project.status.value,
            "generationLog": project.generation_log,
            "error": project.error,
            "createdAt": _timestamp(project.created_at),
            "updatedAt": _timestamp(project.updated_at),
        }
        if project.user_id is not None:
            fields["userId"] = project.user_id
        return fields

    @staticmethod
    def _project_from_doc(project_id: str, data: dict[str, Any]) -> Project:
        raw_files = data.get("files")
        return Project(
            project_id=project_id,
            name=data.get("name", ""),
            initial_requirements=data.get("initialRequirements", ""),
            user_id=data.get("userId"),
            files=_files_from_payload(raw_files) if raw_files is not None else None,
            status=ProjectStatus(data.get("status", ProjectStatus.GENERATING.value)),
            generation_log=data.get("generationLog", ""),
            error=data.get("error", ""),
            created_at=data["createdAt"],
            updated_at=data["updatedAt"],
        )

    @staticmethod
    def _checkpoint_from_doc(checkpoint_id: str, data: dict[str, Any]) -> Checkpoint:
        return Checkpoint(
            checkpoint_id=checkpoint_id,
            message=data.get("message", ""),
            created_at=data["createdAt"],
            files=tuple(_files_from_payload(data.get("files"))),
        )
