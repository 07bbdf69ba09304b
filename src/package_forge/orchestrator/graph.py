"""LangGraph refinement graph.

Wires the CodeGenerator, the patch reconciler and a ProjectSession into a
StateGraph that turns one change request into a committed file collection.
"""

from typing import Callable

from langgraph.graph import END, START, StateGraph

from package_forge.agents.code_generator import CodeGenerator
from package_forge.agents.patch_reconciler import apply_patch
from package_forge.orchestrator.exceptions import GraphBuildError
from package_forge.orchestrator.progress import ProgressSink
from package_forge.orchestrator.session import ProjectSession
from package_forge.orchestrator.state import RefineState


def make_request_patch_node(
    generator: CodeGenerator,
    on_progress: ProgressSink | None = None,
) -> Callable[[RefineState], dict]:
    """Factory: returns a node closure that asks the model for a patch.

    The closure:
    1. Calls generator.request_patch(change_request, files_before, images)
    2. Returns {"patch": [...]}

    On error: returns {"errors": [str], "patch": []}
    """

    def request_patch_node(state: RefineState) -> dict:
        try:
            patch = generator.request_patch(
                state["change_request"],
                state["files_before"],
                images=state["images"] or None,
                on_progress=on_progress,
            )
            return {"patch": patch}
        except Exception as exc:
            return {
                "errors": [f"request_patch error: {exc}"],
                "patch": [],
            }

    return request_patch_node


def apply_patch_node(state: RefineState) -> dict:
    """Apply the patch to the starting snapshot without touching live state.

    Returns:
        {"files_after": [...]} or {"errors": [str]} if the patch is invalid.
    """
    try:
        return {"files_after": apply_patch(state["files_before"], state["patch"])}
    except Exception as exc:
        return {"errors": [f"apply_patch error: {exc}"], "files_after": None}


def make_commit_node(session: ProjectSession) -> Callable[[RefineState], dict]:
    """Factory: returns a node closure that commits the patched files.

    The closure checkpoints the pre-change files under the change request,
    persists the new snapshot and swaps it into the session. The graph must
    run inside session.mutation().

    On error: returns {"errors": [str]}; the session is left unchanged.
    """

    def commit_node(state: RefineState) -> dict:
        try:
            change_set, checkpoint = session.commit_held_refinement(
                state["change_request"],
                base_files=state["files_before"],
                new_files=state["files_after"] or [],
            )
            return {
                "change_set": change_set,
                "checkpoint_id": checkpoint.checkpoint_id,
                "status": "completed",
            }
        except Exception as exc:
            return {"errors": [f"commit error: {exc}"]}

    return commit_node


def fail_node(state: RefineState) -> dict:
    """Mark the run failed. Errors are already collected in state."""
    return {"status": "failed"}


def route_on_errors(next_node: str) -> Callable[[RefineState], str]:
    """Factory: router sending the run to "fail" once any error is recorded."""

    def route(state: RefineState) -> str:
        if state["errors"]:
            return "fail"
        return next_node

    return route


def build_refinement_graph(
    generator: CodeGenerator,
    session: ProjectSession,
    on_progress: ProgressSink | None = None,
):
    """Build and compile the refinement StateGraph.

    Edge topology:
      START -> request_patch -> conditional -> {apply_patch, fail}
      apply_patch -> conditional -> {commit, fail}
      commit -> conditional -> {END, fail}
      fail -> END

    Args:
        generator: Model collaborator producing patches.
        session: Session owning the project's live files.
        on_progress: Optional sink for streamed model output.

    Returns:
        CompiledStateGraph ready to invoke.

    Raises:
        GraphBuildError: If graph construction fails.
    """
    try:
        graph = StateGraph(RefineState)

        graph.add_node("request_patch", make_request_patch_node(generator, on_progress))
        graph.add_node("apply_patch", apply_patch_node)
        graph.add_node("commit", make_commit_node(session))
        graph.add_node("fail", fail_node)

        graph.add_edge(START, "request_patch")
        graph.add_conditional_edges(
            "request_patch",
            route_on_errors("apply_patch"),
            {"apply_patch": "apply_patch", "fail": "fail"},
        )
        graph.add_conditional_edges(
            "apply_patch",
            route_on_errors("commit"),
            {"commit": "commit", "fail": "fail"},
        )
        graph.add_conditional_edges(
            "commit",
            route_on_errors("done"),
            {"done": END, "fail": "fail"},
        )
        graph.add_edge("fail", END)

        return graph.compile()

    except Exception as exc:
        raise GraphBuildError(f"Failed to build refinement graph: {exc}") from exc
