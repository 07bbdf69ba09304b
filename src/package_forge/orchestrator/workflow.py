"""High-level project operations: generate, refine, consolidate and export."""

import logging
from typing import Any

from pydantic import BaseModel, ConfigDict

from package_forge.agents.code_generator import CodeGenerator
from package_forge.exceptions import ForgeError
from package_forge.models import ChangeSet, ChatRole, FileRecord, Project
from package_forge.orchestrator.graph import build_refinement_graph
from package_forge.orchestrator.progress import (
    DEFAULT_PROGRESS_INTERVAL,
    ProgressSink,
    ThrottledProgress,
    fan_out,
    persisting_sink,
)
from package_forge.orchestrator.session import ProjectSession
from package_forge.orchestrator.state import Image, make_initial_state
from package_forge.storage import ProjectRepository
from package_forge.utils.diff_generator import summarize_changes

logger = logging.getLogger(__name__)

REFINE_SUCCESS_MESSAGE = (
    "Done! I've updated the code based on your request. Take a look at the changes."
)
REFINE_FAILURE_TEMPLATE = "I encountered an error trying to process that: {error}"


class RefinementResult(BaseModel):
    """Outcome of one change request."""

    model_config = ConfigDict(frozen=True)

    status: str
    change_set: ChangeSet | None = None
    checkpoint_id: str | None = None
    errors: list[str] = []

    @property
    def succeeded(self) -> bool:
        return self.status == "completed"


def refine_project(
    session: ProjectSession,
    generator: CodeGenerator,
    change_request: str,
    images: list[Image] | None = None,
    on_progress: ProgressSink | None = None,
) -> RefinementResult:
    """Apply a natural-language change request to a project.

    The project's mutation lock is held for the whole run. On failure the
    live files are left unchanged, the error is recorded as a model chat
    message and the session is left in the FAILED state.

    Raises:
        ConcurrentMutationError: If the project already has a change in flight.
        GraphBuildError: If the workflow graph cannot be built.
    """
    with session.mutation():
        session.add_chat_message(ChatRole.USER, change_request)
        app = build_refinement_graph(generator, session, on_progress=on_progress)
        final = app.invoke(
            make_initial_state(
                session.project_id,
                change_request,
                files_before=session.files,
                images=images,
            )
        )

        errors = list(final.get("errors") or [])
        if final.get("status") == "completed" and not errors:
            session.add_chat_message(ChatRole.MODEL, REFINE_SUCCESS_MESSAGE)
            return RefinementResult(
                status="completed",
                change_set=final.get("change_set"),
                checkpoint_id=final.get("checkpoint_id"),
            )

        error = errors[-1] if errors else "unknown error"
        session.add_chat_message(ChatRole.MODEL, REFINE_FAILURE_TEMPLATE.format(error=error))
        session.record_failure(error)
        return RefinementResult(status="failed", errors=errors)


def generate_project(
    repository: ProjectRepository,
    generator: CodeGenerator,
    requirements: str,
    user_id: str | None = None,
    name: str | None = None,
    base_files: list[FileRecord] | None = None,
    on_progress: ProgressSink | None = None,
    progress_interval: float = DEFAULT_PROGRESS_INTERVAL,
) -> Project:
    """Create a project and generate its files from requirements.

    Streamed output goes to on_progress as it arrives and to the project
    document at most once per progress_interval.

    Returns:
        The stored project, COMPLETED or FAILED.

    Raises:
        Exception: Errors outside the ForgeError tree are re-raised after the
            project has been marked FAILED.
    """
    project = repository.create_project(requirements, user_id=user_id, name=name)
    project_id = project.project_id
    sink = fan_out(
        on_progress,
        ThrottledProgress(persisting_sink(repository, project_id), interval=progress_interval),
    )

    try:
        files = generator.request_full_generation(
            requirements, base_files=base_files, on_progress=sink
        )
        repository.finalize_generation(project_id, files)
        logger.info("Generated project %s with %d files", project_id, len(files))
    except ForgeError as e:
        logger.error("Generation failed for project %s: %s", project_id, e)
        repository.fail_generation(project_id, str(e))
    except Exception as e:
        repository.fail_generation(project_id, f"Unexpected error: {e}")
        raise

    return repository.require_project(project_id)


def consolidate_requirements(
    repository: ProjectRepository,
    generator: CodeGenerator,
    project_id: str,
) -> str:
    """Fold a project's chat requests into an updated requirements document."""
    project = repository.require_project(project_id)
    history = repository.get_chat_history(project_id)
    return generator.consolidate_requirements(project.initial_requirements, history)


def export_project_json(project: Project, files: list[FileRecord] | None = None) -> dict[str, Any]:
    """Return the portable JSON form of a project."""
    records = files if files is not None else (project.files or [])
    return {
        "projectName": project.name,
        "initialRequirements": project.initial_requirements,
        "files": [{"path": record.path, "content": record.content} for record in records],
    }


def export_patch(session: ProjectSession, checkpoint_id: str | None = None) -> str:
    """Render the live files as a diff summary.

    The baseline is the given checkpoint, or an empty collection so every
    file shows as added.
    """
    baseline = session.get_checkpoint(checkpoint_id).files if checkpoint_id else ()
    return summarize_changes(baseline, session.files)
