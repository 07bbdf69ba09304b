"""Project sessions and the LangGraph refinement workflow."""

from package_forge.orchestrator.exceptions import (
    CheckpointNotFoundError,
    ConcurrentMutationError,
    GraphBuildError,
    OrchestratorError,
)
from package_forge.orchestrator.graph import build_refinement_graph
from package_forge.orchestrator.progress import ThrottledProgress, fan_out, persisting_sink
from package_forge.orchestrator.session import ProjectSession
from package_forge.orchestrator.state import RefineState, make_initial_state
from package_forge.orchestrator.workflow import (
    RefinementResult,
    consolidate_requirements,
    export_patch,
    export_project_json,
    generate_project,
    refine_project,
)

__all__ = [
    "CheckpointNotFoundError",
    "ConcurrentMutationError",
    "GraphBuildError",
    "OrchestratorError",
    "ProjectSession",
    "RefineState",
    "RefinementResult",
    "ThrottledProgress",
    "build_refinement_graph",
    "consolidate_requirements",
    "export_patch",
    "export_project_json",
    "fan_out",
    "generate_project",
    "make_initial_state",
    "persisting_sink",
    "refine_project",
]
