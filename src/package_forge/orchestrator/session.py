"""Project session: owner of the live file collection and its history.

All mutation of a project's files goes through ProjectSession. Each
mutation is transactional: the new state is computed in memory, persisted,
and only then made visible on the session.
"""

import logging
import threading
import uuid
from collections.abc import Iterable, Iterator, Sequence
from contextlib import contextmanager
from typing import Any

from package_forge.agents.patch_reconciler import apply_patch
from package_forge.models import (
    ChangeSet,
    ChatMessage,
    ChatRole,
    Checkpoint,
    FileCollection,
    FileRecord,
    PatchOperation,
    SessionState,
    copy_files,
    files_from_mapping,
    index_files,
)
from package_forge.orchestrator.exceptions import (
    CheckpointNotFoundError,
    ConcurrentMutationError,
    OrchestratorError,
)
from package_forge.orchestrator.locks import project_lock
from package_forge.storage import ProjectRepository, StorageError
from package_forge.utils.line_diff import compute_change_set

logger = logging.getLogger(__name__)

REVERT_CHECKPOINT_PREFIX = "Before reverting to: "


class ProjectSession:
    """Snapshot and checkpoint manager for one active project."""

    def __init__(
        self,
        project_id: str,
        files: Iterable[FileRecord] = (),
        checkpoints: Iterable[Checkpoint] = (),
        chat_history: Iterable[ChatMessage] = (),
        repository: ProjectRepository | None = None,
    ) -> None:
        """Initialize the session.

        Args:
            project_id: Id of the project this session manages.
            files: Current file collection.
            checkpoints: Existing checkpoints, in any order.
            chat_history: Existing chat messages, oldest first.
            repository: Persistence backend. Without one the session is
                purely in-memory.
        """
        self.project_id = project_id
        self._files: dict[str, str] = index_files(files)
        self._checkpoints: list[Checkpoint] = sorted(
            checkpoints, key=lambda checkpoint: checkpoint.created_at, reverse=True
        )
        self._chat_history: list[ChatMessage] = list(chat_history)
        self._changed_paths: frozenset[str] = frozenset()
        self._line_diffs: dict[str, frozenset[int]] = {}
        self._repository = repository
        self._depth = 0
        self._owner: int | None = None
        self.state: SessionState = SessionState.IDLE
        self.last_error: str | None = None

    @classmethod
    def load(cls, repository: ProjectRepository, project_id: str) -> "ProjectSession":
        """Open a session on a persisted project."""
        files = repository.read_snapshot(project_id)
        return cls(
            project_id=project_id,
            files=files,
            checkpoints=repository.list_checkpoints(project_id),
            chat_history=repository.get_chat_history(project_id),
            repository=repository,
        )

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def files(self) -> FileCollection:
        return files_from_mapping(self._files)

    @property
    def file_map(self) -> dict[str, str]:
        return dict(self._files)

    @property
    def changed_paths(self) -> frozenset[str]:
        return self._changed_paths

    @property
    def line_diffs(self) -> dict[str, frozenset[int]]:
        return dict(self._line_diffs)

    @property
    def chat_history(self) -> list[ChatMessage]:
        return list(self._chat_history)

    def get_file(self, path: str) -> str | None:
        return self._files.get(path)

    # ------------------------------------------------------------------
    # Mutation guard
    # ------------------------------------------------------------------

    @contextmanager
    def mutation(self) -> Iterator[None]:
        """Hold the project's mutation lock for the duration of the block.

        The outermost block moves the session to PATCHING, then back to IDLE
        on success or to FAILED when an exception escapes.

        Nested blocks on the owning thread share the outer block's hold.
        Code running on another thread while the hold is active, such as a
        graph node, commits through commit_held_refinement instead.

        Raises:
            ConcurrentMutationError: If another session or thread is mutating
                the project.
        """
        if self._depth > 0:
            if self._owner != threading.get_ident():
                raise ConcurrentMutationError(
                    f"Project '{self.project_id}' already has a change in progress"
                )
            self._depth += 1
            try:
                yield
            finally:
                self._depth -= 1
            return

        lock = project_lock(self.project_id)
        if not lock.acquire(blocking=False):
            raise ConcurrentMutationError(
                f"Project '{self.project_id}' already has a change in progress"
            )
        self._depth = 1
        self._owner = threading.get_ident()
        self.state = SessionState.PATCHING
        self.last_error = None
        try:
            yield
        except Exception as exc:
            self.record_failure(str(exc))
            raise
        else:
            if self.state == SessionState.PATCHING:
                self.state = SessionState.IDLE
        finally:
            self._depth = 0
            self._owner = None
            lock.release()

    def record_failure(self, error: str) -> None:
        """Mark the current mutation as failed without changing files."""
        self.state = SessionState.FAILED
        self.last_error = error
        logger.warning("Project %s change failed: %s", self.project_id, error)

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------

    def create_checkpoint(
        self,
        message: str,
        files: Iterable[FileRecord] | None = None,
    ) -> Checkpoint:
        """Store an immutable copy of a file collection.

        Args:
            message: Label, normally the request about to change the files.
            files: Files to capture. Defaults to the live collection.

        Returns:
            The stored checkpoint.
        """
        captured = copy_files(files) if files is not None else self.files
        checkpoint = Checkpoint(
            checkpoint_id=uuid.uuid4().hex,
            message=message,
            files=tuple(captured),
        )
        if self._repository is not None:
            self._repository.persist_checkpoint(self.project_id, checkpoint)
        self._checkpoints.insert(0, checkpoint)
        return checkpoint

    def list_checkpoints(self) -> list[Checkpoint]:
        """Return checkpoints newest first."""
        return sorted(self._checkpoints, key=lambda checkpoint: checkpoint.created_at, reverse=True)

    def get_checkpoint(self, checkpoint_id: str) -> Checkpoint:
        for checkpoint in self._checkpoints:
            if checkpoint.checkpoint_id == checkpoint_id:
                return checkpoint
        raise CheckpointNotFoundError(f"Checkpoint '{checkpoint_id}' not found")

    def preview_revert(self, checkpoint_id: str) -> ChangeSet:
        """Describe what reverting to a checkpoint would change."""
        checkpoint = self.get_checkpoint(checkpoint_id)
        return compute_change_set(self.files, checkpoint.files)

    def revert(self, checkpoint_id: str) -> ChangeSet:
        """Replace the live files with a checkpoint's files.

        The pre-revert state is checkpointed first and a chat message records
        the revert. Past checkpoints are never altered.

        Returns:
            Changes relative to the pre-revert collection.
        """
        with self.mutation():
            target = self.get_checkpoint(checkpoint_id)
            change_set, _ = self._commit(
                index_files(target.files),
                checkpoint_message=f"{REVERT_CHECKPOINT_PREFIX}{target.message}",
            )
            self.add_chat_message(
                ChatRole.MODEL,
                f'Reverted the project to the checkpoint "{target.message}".',
            )
            return change_set

    # ------------------------------------------------------------------
    # File mutations
    # ------------------------------------------------------------------

    def apply_patch(
        self,
        patch: Sequence[PatchOperation | dict[str, Any]],
        message: str,
    ) -> ChangeSet:
        """Checkpoint the live files, then apply a patch to them."""
        with self.mutation():
            new_files = apply_patch(self.files, patch)
            change_set, _ = self._commit(index_files(new_files), checkpoint_message=message)
            return change_set

    def commit_refinement(
        self,
        message: str,
        base_files: Iterable[FileRecord],
        new_files: Iterable[FileRecord],
    ) -> tuple[ChangeSet, Checkpoint]:
        """Commit files computed from base_files, if base_files is still live.

        Raises:
            ConcurrentMutationError: If the live files changed since
                base_files was read.
        """
        with self.mutation():
            return self.commit_held_refinement(message, base_files, new_files)

    def commit_held_refinement(
        self,
        message: str,
        base_files: Iterable[FileRecord],
        new_files: Iterable[FileRecord],
    ) -> tuple[ChangeSet, Checkpoint]:
        """Like commit_refinement, inside a mutation block that is already held.

        The block may belong to another thread: the refinement graph calls
        this from its worker threads while the workflow holds the lock.

        Raises:
            OrchestratorError: If no mutation block is active.
            ConcurrentMutationError: If the live files changed since
                base_files was read.
        """
        if self._depth == 0:
            raise OrchestratorError(
                f"Project '{self.project_id}' has no change in progress to commit into"
            )
        if index_files(base_files) != self._files:
            raise ConcurrentMutationError(
                f"Project '{self.project_id}' changed while the patch was being prepared"
            )
        return self._commit(index_files(new_files), checkpoint_message=message)

    def edit_file(self, path: str, content: str) -> ChangeSet:
        """Apply a manual edit to a single file.

        The edited path becomes the only changed path, and its line-diff
        highlight is dropped since a human edit supersedes it.
        """
        with self.mutation():
            if self._files.get(path) == content:
                return ChangeSet()

            new_map = dict(self._files)
            new_map[path] = content
            new_files = files_from_mapping(new_map)
            if self._repository is not None:
                self._repository.persist_snapshot(self.project_id, new_files)

            self._files = new_map
            self._changed_paths = frozenset({path})
            self._line_diffs = {key: lines for key, lines in self._line_diffs.items() if key != path}
            return ChangeSet(changed_paths=frozenset({path}))

    # ------------------------------------------------------------------
    # Chat history
    # ------------------------------------------------------------------

    def add_chat_message(self, role: ChatRole, content: str) -> ChatMessage:
        message = ChatMessage(role=role, content=content)
        if self._repository is not None:
            self._repository.add_chat_message(self.project_id, message)
        self._chat_history.append(message)
        return message

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _commit(
        self,
        new_map: dict[str, str],
        checkpoint_message: str,
    ) -> tuple[ChangeSet, Checkpoint]:
        """Checkpoint the current files, persist new_map, then expose it.

        If the snapshot cannot be persisted the checkpoint is withdrawn from
        memory and storage before the error propagates.
        """
        old_files = self.files
        new_files = files_from_mapping(new_map)
        change_set = compute_change_set(old_files, new_files)

        checkpoint = self.create_checkpoint(checkpoint_message, old_files)

        if self._repository is not None:
            try:
                self._repository.persist_snapshot(self.project_id, new_files)
            except Exception:
                self._withdraw_checkpoint(checkpoint)
                raise

        self._files = dict(new_map)
        self._changed_paths = change_set.changed_paths
        self._line_diffs = dict(change_set.line_diffs)
        logger.info(
            "Project %s: %d changed, %d deleted",
            self.project_id,
            len(change_set.changed_paths),
            len(change_set.deleted_paths),
        )
        return change_set, checkpoint

    def _withdraw_checkpoint(self, checkpoint: Checkpoint) -> None:
        self._checkpoints = [
            kept for kept in self._checkpoints if kept.checkpoint_id != checkpoint.checkpoint_id
        ]
        try:
            self._repository.delete_checkpoint(self.project_id, checkpoint.checkpoint_id)
        except StorageError as e:
            logger.error(
                "Project %s: failed to remove checkpoint %s after a failed commit: %s",
                self.project_id,
                checkpoint.checkpoint_id,
                e,
            )
