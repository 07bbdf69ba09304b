"""CLI entry point for Package Forge."""
import argparse
from dotenv import load_dotenv
import base64
import json
import logging
import mimetypes
import os
import sys
import traceback
from pathlib import Path

from package_forge.agents.exceptions import AgentError
from package_forge.orchestrator.exceptions import OrchestratorError
from package_forge.storage.exceptions import StorageError

load_dotenv()

# Exit codes
EXIT_SUCCESS = 0
EXIT_INVALID_INPUT = 1
EXIT_AGENT_ERROR = 2
EXIT_ORCHESTRATOR_ERROR = 3
EXIT_STORAGE_ERROR = 4
EXIT_UNEXPECTED = 5
EXIT_KEYBOARD_INTERRUPT = 130

# Defaults
DEFAULT_MAX_RETRIES = 3
DEFAULT_MODEL = "claude-sonnet-4-5-20250929"
DEFAULT_STORE_DIR = "./data/projects"
DEFAULT_PROGRESS_INTERVAL = 2.0

# Safe keys allowed in config output (no secrets)
_SAFE_CONFIG_KEYS = frozenset({
    "command", "project_id", "store_dir", "model", "max_retries",
    "llm_provider", "llm_fallback_provider", "allow_llm_fallback",
    "verbose", "dry_run", "output_json", "format",
})


def build_parser() -> argparse.ArgumentParser:
    """Build and return the argument parser."""
    parser = argparse.ArgumentParser(
        prog="package-forge",
        description="Generate and iteratively patch multi-file projects with an LLM",
    )
    parser.add_argument(
        "--store-dir",
        type=str,
        default=os.getenv("PACKAGE_FORGE_STORE_DIR", DEFAULT_STORE_DIR),
        help=f"Project store directory (default: $PACKAGE_FORGE_STORE_DIR or {DEFAULT_STORE_DIR})",
    )
    parser.add_argument(
        "--model",
        type=str,
        default=DEFAULT_MODEL,
        help=f"Model ID to use (default: {DEFAULT_MODEL})",
    )
    parser.add_argument(
        "--max-retries",
        type=int,
        default=DEFAULT_MAX_RETRIES,
        help=f"Attempts per provider on rate limits (default: {DEFAULT_MAX_RETRIES})",
    )
    parser.add_argument(
        "--llm-provider",
        type=str,
        default="auto",
        choices=("auto", "anthropic", "openai"),
        help="LLM provider: auto (default), anthropic, or openai",
    )
    parser.add_argument(
        "--llm-fallback-provider",
        type=str,
        default="",
        choices=("", "anthropic", "openai"),
        help="Optional fallback provider when the primary provider fails",
    )
    parser.add_argument(
        "--allow-llm-fallback",
        action="store_true",
        help="Allow fallback to the alternate provider when the primary fails",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable verbose output")
    parser.add_argument(
        "--dry-run", action="store_true", help="Print config and exit without running"
    )
    parser.add_argument(
        "--output-json", action="store_true", help="Output results as JSON"
    )

    sub = parser.add_subparsers(dest="command", required=True)

    generate = sub.add_parser("generate", help="Create a project from a requirements file")
    generate.add_argument("requirements_file", type=str, help="Requirements document (Markdown)")
    generate.add_argument("--name", type=str, default=None, help="Project name")
    generate.add_argument("--user-id", type=str, default=None, help="Owner id")
    generate.add_argument(
        "--base-files",
        type=str,
        default=None,
        help="JSON file with a [{path, content}] list to build upon",
    )

    refine = sub.add_parser("refine", help="Apply a change request to a project")
    refine.add_argument("project_id", type=str)
    refine.add_argument("request", type=str, help="Change request text")
    refine.add_argument(
        "--image",
        action="append",
        default=[],
        help="Image file to attach (repeatable)",
    )

    edit = sub.add_parser("edit", help="Replace one file's content by hand")
    edit.add_argument("project_id", type=str)
    edit.add_argument("path", type=str, help="Project file path")
    edit.add_argument(
        "--content-file",
        type=str,
        default="-",
        help="Local file holding the new content (default: stdin)",
    )

    history = sub.add_parser("history", help="List checkpoints, newest first")
    history.add_argument("project_id", type=str)
    history.add_argument("--chat", action="store_true", help="Show chat history instead")

    revert = sub.add_parser("revert", help="Restore a checkpoint")
    revert.add_argument("project_id", type=str)
    revert.add_argument("checkpoint_id", type=str)
    revert.add_argument(
        "--preview", action="store_true", help="Show what would change without reverting"
    )

    diff = sub.add_parser("diff", help="Show changes since a checkpoint")
    diff.add_argument("project_id", type=str)
    diff.add_argument("checkpoint_id", type=str)

    export = sub.add_parser("export", help="Export a project")
    export.add_argument("project_id", type=str)
    export.add_argument(
        "--format",
        type=str,
        default="json",
        choices=("json", "patch"),
        help="json (default) or patch",
    )
    export.add_argument(
        "--checkpoint",
        type=str,
        default=None,
        help="Baseline checkpoint for patch output (default: empty project)",
    )
    export.add_argument("--output", type=str, default=None, help="Write to this path")

    listing = sub.add_parser("list", help="List projects")
    listing.add_argument("--user-id", type=str, default=None, help="Only this owner's projects")

    rename = sub.add_parser("rename", help="Rename a project")
    rename.add_argument("project_id", type=str)
    rename.add_argument("name", type=str)

    delete = sub.add_parser("delete", help="Delete a project and its history")
    delete.add_argument("project_id", type=str)

    consolidate = sub.add_parser(
        "consolidate", help="Merge chat requests into updated requirements"
    )
    consolidate.add_argument("project_id", type=str)

    return parser


def create_repository(args: argparse.Namespace):
    """Create the project repository backed by the store directory."""
    from package_forge.storage import JsonFileDocumentStore, ProjectRepository

    return ProjectRepository(JsonFileDocumentStore(args.store_dir))


def create_generator(args: argparse.Namespace):
    """Create the code generator from CLI arguments.

    The import is deferred to avoid loading anthropic/openai for --help
    and --dry-run paths.
    """
    from package_forge.agents.code_generator import CodeGenerator

    return CodeGenerator(
        api_key=os.getenv("ANTHROPIC_API_KEY"),
        model=args.model,
        llm_provider=args.llm_provider,
        llm_fallback_provider=args.llm_fallback_provider or None,
        allow_fallback=bool(args.allow_llm_fallback),
        max_attempts=args.max_retries,
    )


def read_text_arg(raw_path: str) -> str:
    """Read a text file argument, or stdin for "-".

    Raises:
        SystemExit: If the file cannot be read.
    """
    if raw_path == "-":
        return sys.stdin.read()
    path = Path(raw_path).expanduser()
    if not path.is_file():
        print(f"Error: '{raw_path}' is not a readable file.", file=sys.stderr)
        raise SystemExit(EXIT_INVALID_INPUT)
    return path.read_text(encoding="utf-8")


def load_image(raw_path: str) -> dict[str, str]:
    """Read an image file into a {mime_type, data} attachment."""
    path = Path(raw_path).expanduser()
    if not path.is_file():
        print(f"Error: '{raw_path}' is not a readable file.", file=sys.stderr)
        raise SystemExit(EXIT_INVALID_INPUT)
    mime_type, _ = mimetypes.guess_type(path.name)
    if not mime_type or not mime_type.startswith("image/"):
        print(f"Error: '{raw_path}' is not an image.", file=sys.stderr)
        raise SystemExit(EXIT_INVALID_INPUT)
    return {
        "mime_type": mime_type,
        "data": base64.b64encode(path.read_bytes()).decode("ascii"),
    }


def format_result_json(result: dict) -> str:
    """Serialize result dict to JSON string.

    Calls .model_dump() on Pydantic model values. Falls back to str()
    for non-serializable types (datetime, frozenset, etc.) via default=str.
    """

    def _serialize(obj):
        if obj is None:
            return None
        if hasattr(obj, "model_dump"):
            return obj.model_dump(mode="json")
        if isinstance(obj, list):
            return [_serialize(item) for item in obj]
        return obj

    prepared = {k: _serialize(v) for k, v in result.items()}
    return json.dumps(prepared, indent=2, default=str)


def print_change_set(change_set) -> None:
    """Print changed and deleted paths with their changed line numbers."""
    if change_set is None or change_set.is_empty:
        print("No changes.")
        return
    for path in sorted(change_set.changed_paths):
        lines = sorted(change_set.line_diffs.get(path, ()))
        suffix = f" (lines: {_format_ranges(lines)})" if lines else ""
        print(f"  M {path}{suffix}")
    for path in sorted(change_set.deleted_paths):
        print(f"  D {path}")


def _format_ranges(numbers: list[int]) -> str:
    ranges: list[str] = []
    start = prev = None
    for number in numbers:
        if start is None:
            start = prev = number
        elif number == prev + 1:
            prev = number
        else:
            ranges.append(f"{start}-{prev}" if start != prev else str(start))
            start = prev = number
    if start is not None:
        ranges.append(f"{start}-{prev}" if start != prev else str(start))
    return ", ".join(ranges)


def print_config_human(config: dict) -> None:
    """Print configuration in human-readable format.

    Only prints keys in the safe allowlist to prevent secret leakage.
    """
    print("\nConfiguration:")
    print(f"{'='*40}")
    for key, value in config.items():
        if key in _SAFE_CONFIG_KEYS:
            print(f"  {key}: {value}")
    print(f"{'='*40}")


def _progress_printer(verbose: bool):
    """Sink that reports the streamed size to stderr in verbose mode."""
    if not verbose:
        return None

    from package_forge.orchestrator.progress import ThrottledProgress

    def sink(text: str) -> None:
        print(f"... received {len(text)} characters", file=sys.stderr)

    return ThrottledProgress(sink, interval=DEFAULT_PROGRESS_INTERVAL)


def _handle_error(label: str, exc: BaseException, verbose: bool, exit_code: int) -> int:
    """Print error message to stderr and return the exit code."""
    print(f"{label}: {exc}", file=sys.stderr)
    if verbose:
        traceback.print_exc(file=sys.stderr)
    return exit_code


# ----------------------------------------------------------------------
# Commands
# ----------------------------------------------------------------------


def cmd_generate(args: argparse.Namespace) -> int:
    from package_forge.agents.patch_reconciler import parse_file_collection_json
    from package_forge.models import ProjectStatus
    from package_forge.orchestrator.workflow import generate_project

    requirements = read_text_arg(args.requirements_file)
    base_files = None
    if args.base_files:
        base_files = parse_file_collection_json(read_text_arg(args.base_files))

    repository = create_repository(args)
    generator = create_generator(args)
    project = generate_project(
        repository,
        generator,
        requirements,
        user_id=args.user_id,
        name=args.name,
        base_files=base_files,
        on_progress=_progress_printer(args.verbose),
    )

    if args.output_json:
        print(format_result_json({
            "project_id": project.project_id,
            "name": project.name,
            "status": project.status.value,
            "error": project.error or None,
            "files": [record.path for record in project.files or []],
        }))
    elif project.status == ProjectStatus.COMPLETED:
        print(f"Generated project {project.project_id} ({project.name})")
        for record in project.files or []:
            print(f"  {record.path}")
    else:
        print(f"Generation failed for project {project.project_id}: {project.error}", file=sys.stderr)

    return EXIT_SUCCESS if project.status == ProjectStatus.COMPLETED else EXIT_AGENT_ERROR


def cmd_refine(args: argparse.Namespace) -> int:
    from package_forge.orchestrator.session import ProjectSession
    from package_forge.orchestrator.workflow import refine_project

    images = [load_image(path) for path in args.image]
    repository = create_repository(args)
    generator = create_generator(args)
    session = ProjectSession.load(repository, args.project_id)
    result = refine_project(
        session,
        generator,
        args.request,
        images=images or None,
        on_progress=_progress_printer(args.verbose),
    )

    if args.output_json:
        print(format_result_json(result.model_dump(mode="json")))
    elif result.succeeded:
        print(f"Applied change (checkpoint {result.checkpoint_id}):")
        print_change_set(result.change_set)
    else:
        print(f"Change failed: {session.last_error}", file=sys.stderr)

    return EXIT_SUCCESS if result.succeeded else EXIT_AGENT_ERROR


def cmd_edit(args: argparse.Namespace) -> int:
    from package_forge.orchestrator.session import ProjectSession

    content = read_text_arg(args.content_file)
    session = ProjectSession.load(create_repository(args), args.project_id)
    change_set = session.edit_file(args.path, content)

    if args.output_json:
        print(format_result_json({"change_set": change_set}))
    else:
        print_change_set(change_set)
    return EXIT_SUCCESS


def cmd_history(args: argparse.Namespace) -> int:
    repository = create_repository(args)
    repository.require_project(args.project_id)

    if args.chat:
        messages = repository.get_chat_history(args.project_id)
        if args.output_json:
            print(format_result_json({"messages": messages}))
        else:
            for message in messages:
                print(f"[{message.timestamp.isoformat()}] {message.role.value}: {message.content}")
        return EXIT_SUCCESS

    checkpoints = repository.list_checkpoints(args.project_id)
    if args.output_json:
        print(format_result_json({
            "checkpoints": [
                {
                    "checkpoint_id": checkpoint.checkpoint_id,
                    "message": checkpoint.message,
                    "created_at": checkpoint.created_at.isoformat(),
                    "file_count": len(checkpoint.files),
                }
                for checkpoint in checkpoints
            ]
        }))
    else:
        for checkpoint in checkpoints:
            print(
                f"{checkpoint.checkpoint_id}  {checkpoint.created_at.isoformat()}  "
                f"{checkpoint.message} ({len(checkpoint.files)} files)"
            )
    return EXIT_SUCCESS


def cmd_revert(args: argparse.Namespace) -> int:
    from package_forge.orchestrator.session import ProjectSession

    session = ProjectSession.load(create_repository(args), args.project_id)
    if args.preview:
        change_set = session.preview_revert(args.checkpoint_id)
    else:
        change_set = session.revert(args.checkpoint_id)

    if args.output_json:
        print(format_result_json({"preview": args.preview, "change_set": change_set}))
    else:
        print("Reverting would change:" if args.preview else "Reverted:")
        print_change_set(change_set)
    return EXIT_SUCCESS


def cmd_diff(args: argparse.Namespace) -> int:
    from package_forge.orchestrator.session import ProjectSession
    from package_forge.orchestrator.workflow import export_patch

    session = ProjectSession.load(create_repository(args), args.project_id)
    print(export_patch(session, args.checkpoint_id), end="")
    return EXIT_SUCCESS


def cmd_export(args: argparse.Namespace) -> int:
    from package_forge.orchestrator.session import ProjectSession
    from package_forge.orchestrator.workflow import export_patch, export_project_json

    repository = create_repository(args)
    if args.format == "patch":
        session = ProjectSession.load(repository, args.project_id)
        payload = export_patch(session, args.checkpoint)
    else:
        project = repository.require_project(args.project_id)
        payload = json.dumps(export_project_json(project), indent=2, ensure_ascii=False) + "\n"

    if args.output:
        output_path = Path(args.output).expanduser().resolve()
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_text(payload, encoding="utf-8")
        if args.verbose:
            print(f"Export written: {output_path}")
    else:
        print(payload, end="")
    return EXIT_SUCCESS


def cmd_list(args: argparse.Namespace) -> int:
    projects = create_repository(args).list_projects(user_id=args.user_id)
    if args.output_json:
        print(format_result_json({
            "projects": [
                {
                    "project_id": project.project_id,
                    "name": project.name,
                    "status": project.status.value,
                    "updated_at": project.updated_at.isoformat(),
                }
                for project in projects
            ]
        }))
    else:
        for project in projects:
            print(
                f"{project.project_id}  {project.status.value:<10}  "
                f"{project.updated_at.isoformat()}  {project.name}"
            )
    return EXIT_SUCCESS


def cmd_rename(args: argparse.Namespace) -> int:
    create_repository(args).rename_project(args.project_id, args.name)
    print(f"Renamed {args.project_id} to '{args.name}'")
    return EXIT_SUCCESS


def cmd_delete(args: argparse.Namespace) -> int:
    from package_forge.orchestrator.locks import release_project_lock

    repository = create_repository(args)
    repository.require_project(args.project_id)
    repository.delete_project(args.project_id)
    release_project_lock(args.project_id)
    print(f"Deleted {args.project_id}")
    return EXIT_SUCCESS


def cmd_consolidate(args: argparse.Namespace) -> int:
    from package_forge.orchestrator.workflow import consolidate_requirements

    repository = create_repository(args)
    generator = create_generator(args)
    print(consolidate_requirements(repository, generator, args.project_id))
    return EXIT_SUCCESS


COMMANDS = {
    "generate": cmd_generate,
    "refine": cmd_refine,
    "edit": cmd_edit,
    "history": cmd_history,
    "revert": cmd_revert,
    "diff": cmd_diff,
    "export": cmd_export,
    "list": cmd_list,
    "rename": cmd_rename,
    "delete": cmd_delete,
    "consolidate": cmd_consolidate,
}


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point.

    Args:
        argv: Command-line arguments (defaults to sys.argv[1:]).

    Returns:
        Exit code integer.
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.verbose:
        logging.basicConfig(level=logging.DEBUG)

    config = {
        "command": args.command,
        "project_id": getattr(args, "project_id", None),
        "store_dir": args.store_dir,
        "model": args.model,
        "max_retries": args.max_retries,
        "llm_provider": args.llm_provider,
        "llm_fallback_provider": args.llm_fallback_provider,
        "allow_llm_fallback": args.allow_llm_fallback,
        "verbose": args.verbose,
        "dry_run": args.dry_run,
        "output_json": args.output_json,
        "format": getattr(args, "format", None),
    }

    if args.dry_run:
        if args.output_json:
            print(json.dumps(config, indent=2))
        else:
            print_config_human(config)
        return EXIT_SUCCESS

    try:
        return COMMANDS[args.command](args)

    except SystemExit as exc:
        return exc.code

    except AgentError as exc:
        return _handle_error("Agent error", exc, args.verbose, EXIT_AGENT_ERROR)

    except OrchestratorError as exc:
        return _handle_error("Orchestrator error", exc, args.verbose, EXIT_ORCHESTRATOR_ERROR)

    except StorageError as exc:
        return _handle_error("Storage error", exc, args.verbose, EXIT_STORAGE_ERROR)

    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        return EXIT_KEYBOARD_INTERRUPT

    except Exception as exc:
        return _handle_error("Unexpected error", exc, args.verbose, EXIT_UNEXPECTED)


if __name__ == "__main__":
    sys.exit(main())
