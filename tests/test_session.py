"""Tests for ProjectSession snapshot and checkpoint management."""

import threading
from unittest.mock import patch

import pytest

from package_forge.agents.exceptions import PatchValidationError
from package_forge.models import ChatRole, FileRecord, SessionState, index_files
from package_forge.orchestrator.exceptions import (
    CheckpointNotFoundError,
    ConcurrentMutationError,
    OrchestratorError,
)
from package_forge.orchestrator.locks import project_lock
from package_forge.orchestrator.session import REVERT_CHECKPOINT_PREFIX, ProjectSession
from package_forge.storage.exceptions import StorageError


@pytest.fixture
def local_session():
    """Session without persistence."""
    return ProjectSession("local-project", files=[FileRecord(path="A.txt", content="line1\nline2")])


# ---------------------------------------------------------------------------
# Loading and views
# ---------------------------------------------------------------------------


def test_load_from_repository(session, sample_files):
    assert index_files(session.files) == index_files(sample_files)
    assert [c.message for c in session.list_checkpoints()] == ["Initial Version"]
    assert session.state == SessionState.IDLE
    assert session.changed_paths == frozenset()


def test_file_map_is_a_copy(local_session):
    local_session.file_map["A.txt"] = "mutated"
    assert local_session.get_file("A.txt") == "line1\nline2"


# ---------------------------------------------------------------------------
# Patching
# ---------------------------------------------------------------------------


class TestApplyPatch:
    def test_end_to_end_update(self, local_session):
        """Update patch yields new content, line diffs and changed paths."""
        change_set = local_session.apply_patch(
            [{"op": "update", "path": "A.txt", "content": "line1\nline2-changed\nline3"}],
            "Change line 2",
        )
        assert local_session.file_map == {"A.txt": "line1\nline2-changed\nline3"}
        assert local_session.line_diffs == {"A.txt": frozenset({2, 3})}
        assert local_session.changed_paths == frozenset({"A.txt"})
        assert change_set.changed_paths == frozenset({"A.txt"})
        assert local_session.state == SessionState.IDLE

    def test_checkpoint_captures_pre_mutation_state(self, local_session):
        local_session.apply_patch([{"op": "add", "path": "B.txt", "content": "b"}], "Add B")
        (checkpoint,) = local_session.list_checkpoints()
        assert checkpoint.message == "Add B"
        assert index_files(checkpoint.files) == {"A.txt": "line1\nline2"}

    def test_checkpoint_unaffected_by_later_mutations(self, local_session):
        """A stored checkpoint never changes after further edits."""
        local_session.apply_patch([{"op": "update", "path": "A.txt", "content": "v2"}], "v2")
        local_session.apply_patch([{"op": "update", "path": "A.txt", "content": "v3"}], "v3")
        local_session.edit_file("A.txt", "v4")
        oldest = local_session.list_checkpoints()[-1]
        assert index_files(oldest.files) == {"A.txt": "line1\nline2"}

    def test_delete_reports_deleted_path(self, local_session):
        change_set = local_session.apply_patch([{"op": "delete", "path": "A.txt"}], "Remove A")
        assert local_session.files == []
        assert change_set.deleted_paths == frozenset({"A.txt"})
        assert local_session.changed_paths == frozenset()

    def test_invalid_patch_leaves_state_unchanged(self, local_session):
        with pytest.raises(PatchValidationError):
            local_session.apply_patch([{"op": "add", "path": "x"}], "bad")
        assert local_session.file_map == {"A.txt": "line1\nline2"}
        assert local_session.list_checkpoints() == []
        assert local_session.state == SessionState.FAILED
        assert local_session.last_error

    def test_failed_state_clears_on_next_mutation(self, local_session):
        with pytest.raises(PatchValidationError):
            local_session.apply_patch([{"op": "add", "path": "x"}], "bad")
        local_session.apply_patch([{"op": "add", "path": "x", "content": "ok"}], "good")
        assert local_session.state == SessionState.IDLE
        assert local_session.last_error is None

    def test_persists_snapshot_and_checkpoint(self, repository, session):
        session.apply_patch([{"op": "update", "path": "README.md", "content": "# New"}], "Docs")
        reloaded = ProjectSession.load(repository, session.project_id)
        assert reloaded.get_file("README.md") == "# New"
        assert [c.message for c in reloaded.list_checkpoints()][0] == "Docs"

    def test_persistence_failure_keeps_live_state(self, repository, session):
        """Live files are only replaced after the snapshot write succeeds."""
        before = session.file_map
        with patch.object(repository, "persist_snapshot", side_effect=StorageError("disk full")):
            with pytest.raises(StorageError):
                session.apply_patch([{"op": "delete", "path": "README.md"}], "Drop docs")
        assert session.file_map == before
        assert session.state == SessionState.FAILED
        assert repository.read_snapshot(session.project_id) == session.files
        assert [c.message for c in session.list_checkpoints()] == ["Initial Version"]
        stored = repository.list_checkpoints(session.project_id)
        assert [c.message for c in stored] == ["Initial Version"]

    def test_checkpoint_rollback_failure_is_logged(self, repository, session, caplog):
        """The snapshot error still propagates when the rollback also fails."""
        with patch.object(repository, "persist_snapshot", side_effect=StorageError("disk full")):
            with patch.object(repository, "delete_checkpoint", side_effect=StorageError("gone")):
                with pytest.raises(StorageError, match="disk full"):
                    session.apply_patch([{"op": "delete", "path": "README.md"}], "Drop docs")
        assert [c.message for c in session.list_checkpoints()] == ["Initial Version"]
        assert "failed to remove checkpoint" in caplog.text


# ---------------------------------------------------------------------------
# Manual edits
# ---------------------------------------------------------------------------


class TestEditFile:
    def test_edit_sets_single_changed_path(self, local_session):
        local_session.apply_patch(
            [
                {"op": "update", "path": "A.txt", "content": "x\ny"},
                {"op": "add", "path": "B.txt", "content": "b"},
            ],
            "two files",
        )
        change_set = local_session.edit_file("A.txt", "hand edited")
        assert local_session.changed_paths == frozenset({"A.txt"})
        assert change_set.changed_paths == frozenset({"A.txt"})
        assert "A.txt" not in local_session.line_diffs
        assert local_session.line_diffs["B.txt"] == frozenset({1})

    def test_edit_creates_no_checkpoint(self, local_session):
        local_session.edit_file("A.txt", "new")
        assert local_session.list_checkpoints() == []

    def test_unchanged_edit_is_noop(self, local_session):
        change_set = local_session.edit_file("A.txt", "line1\nline2")
        assert change_set.is_empty
        assert local_session.changed_paths == frozenset()

    def test_edit_persists(self, repository, session):
        session.edit_file("src/app.js", "// rewritten")
        assert ProjectSession.load(repository, session.project_id).get_file("src/app.js") == "// rewritten"


# ---------------------------------------------------------------------------
# Revert
# ---------------------------------------------------------------------------


class TestRevert:
    def test_revert_restores_files(self, local_session):
        local_session.apply_patch([{"op": "update", "path": "A.txt", "content": "changed"}], "Edit A")
        target = local_session.list_checkpoints()[0]
        change_set = local_session.revert(target.checkpoint_id)
        assert local_session.file_map == {"A.txt": "line1\nline2"}
        assert change_set.changed_paths == frozenset({"A.txt"})
        assert local_session.line_diffs["A.txt"] == frozenset({1, 2})

    def test_revert_checkpoints_pre_revert_state(self, local_session):
        local_session.apply_patch([{"op": "update", "path": "A.txt", "content": "changed"}], "Edit A")
        target = local_session.list_checkpoints()[0]
        local_session.revert(target.checkpoint_id)
        newest = local_session.list_checkpoints()[0]
        assert newest.message == f"{REVERT_CHECKPOINT_PREFIX}Edit A"
        assert index_files(newest.files) == {"A.txt": "changed"}
        # Past checkpoint untouched
        assert local_session.get_checkpoint(target.checkpoint_id) == target

    def test_revert_records_chat_message(self, local_session):
        checkpoint = local_session.create_checkpoint("Manual save")
        local_session.revert(checkpoint.checkpoint_id)
        (message,) = local_session.chat_history
        assert message.role == ChatRole.MODEL
        assert "Manual save" in message.content

    def test_preview_revert_does_not_mutate(self, local_session):
        checkpoint = local_session.create_checkpoint("before")
        local_session.edit_file("A.txt", "edited")
        preview = local_session.preview_revert(checkpoint.checkpoint_id)
        assert preview.changed_paths == frozenset({"A.txt"})
        assert local_session.get_file("A.txt") == "edited"

    def test_unknown_checkpoint(self, local_session):
        with pytest.raises(CheckpointNotFoundError):
            local_session.revert("missing")
        assert local_session.state == SessionState.FAILED


# ---------------------------------------------------------------------------
# Mutual exclusion
# ---------------------------------------------------------------------------


class TestMutationLock:
    def test_rejects_concurrent_mutation(self, local_session):
        """A second mutation while another thread holds the lock is rejected."""
        held = threading.Event()
        release = threading.Event()

        def holder():
            with project_lock(local_session.project_id):
                held.set()
                release.wait(5)

        thread = threading.Thread(target=holder)
        thread.start()
        try:
            held.wait(5)
            with pytest.raises(ConcurrentMutationError):
                local_session.edit_file("A.txt", "x")
        finally:
            release.set()
            thread.join(5)
        assert local_session.get_file("A.txt") == "line1\nline2"

    def test_other_thread_cannot_join_held_mutation(self, local_session):
        """A held mutation belongs to the thread that opened it."""
        errors = []

        def worker():
            try:
                local_session.edit_file("A.txt", "from worker")
            except Exception as exc:
                errors.append(exc)

        with local_session.mutation():
            thread = threading.Thread(target=worker)
            thread.start()
            thread.join(5)

        assert len(errors) == 1
        assert isinstance(errors[0], ConcurrentMutationError)
        assert local_session.get_file("A.txt") == "line1\nline2"
        assert local_session.state == SessionState.IDLE

    def test_nested_mutation_on_owning_thread(self, local_session):
        with local_session.mutation():
            local_session.edit_file("A.txt", "nested")
            assert local_session.state == SessionState.PATCHING
        assert local_session.get_file("A.txt") == "nested"
        assert local_session.state == SessionState.IDLE

    def test_held_commit_from_worker_thread(self, local_session):
        """Graph nodes commit on worker threads while the caller holds the lock."""
        results = []
        base = local_session.files

        def worker():
            results.append(
                local_session.commit_held_refinement(
                    "req", base, [FileRecord(path="A.txt", content="from worker")]
                )
            )

        with local_session.mutation():
            thread = threading.Thread(target=worker)
            thread.start()
            thread.join(5)

        change_set, checkpoint = results[0]
        assert change_set.changed_paths == frozenset({"A.txt"})
        assert checkpoint.message == "req"
        assert local_session.get_file("A.txt") == "from worker"

    def test_held_commit_requires_active_mutation(self, local_session):
        with pytest.raises(OrchestratorError, match="no change in progress"):
            local_session.commit_held_refinement(
                "req", local_session.files, [FileRecord(path="A.txt", content="x")]
            )
        assert local_session.get_file("A.txt") == "line1\nline2"
        assert local_session.list_checkpoints() == []

    def test_commit_refinement_rejects_stale_base(self, local_session):
        stale = [FileRecord(path="A.txt", content="something else")]
        with pytest.raises(ConcurrentMutationError):
            local_session.commit_refinement("req", stale, [FileRecord(path="A.txt", content="x")])
        assert local_session.get_file("A.txt") == "line1\nline2"

    def test_lock_released_after_failure(self, local_session):
        with pytest.raises(PatchValidationError):
            local_session.apply_patch([{"op": "bogus"}], "bad")
        acquired = []

        def try_acquire():
            lock = project_lock(local_session.project_id)
            acquired.append(lock.acquire(blocking=False))
            if acquired[-1]:
                lock.release()

        thread = threading.Thread(target=try_acquire)
        thread.start()
        thread.join(5)
        assert acquired == [True]
