"""State definition for the LangGraph refinement workflow."""

import operator
from typing import Annotated, TypedDict

from package_forge.models import ChangeSet, FileRecord, PatchOperation

Image = dict[str, str]


class RefineState(TypedDict):
    """State for one change request against a project.

    Fields with Annotated[list, operator.add] reducers accumulate across nodes.
    All other fields use default overwrite semantics.
    """

    # Input
    project_id: str
    change_request: str
    images: list[Image]

    # Snapshot read when the request started
    files_before: list[FileRecord]

    # Patch and its result
    patch: list[PatchOperation]
    files_after: list[FileRecord] | None

    # Commit
    change_set: ChangeSet | None
    checkpoint_id: str | None
    status: str

    # Error accumulation
    errors: Annotated[list[str], operator.add]


def make_initial_state(
    project_id: str,
    change_request: str,
    files_before: list[FileRecord],
    images: list[Image] | None = None,
) -> RefineState:
    """Create the initial state for a refinement run.

    Args:
        project_id: Project being changed.
        change_request: The user's request text.
        files_before: Live file collection at the start of the run.
        images: Optional images attached to the request.

    Returns:
        RefineState dict with all fields initialised to defaults.
    """
    return {
        "project_id": project_id,
        "change_request": change_request,
        "images": list(images or []),
        "files_before": list(files_before),
        "patch": [],
        "files_after": None,
        "change_set": None,
        "checkpoint_id": None,
        "status": "pending",
        "errors": [],
    }
