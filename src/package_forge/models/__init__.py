"""Data models for package_forge."""

from package_forge.models.diff_models import ChangeSet
from package_forge.models.file_models import (
    FileCollection,
    FileRecord,
    copy_files,
    files_from_mapping,
    index_files,
)
from package_forge.models.patch_models import (
    PATCH_ADAPTER,
    AddOperation,
    DeleteOperation,
    Patch,
    PatchOperation,
    UpdateOperation,
)
from package_forge.models.project_models import (
    ChatMessage,
    ChatRole,
    Checkpoint,
    Project,
    ProjectStatus,
    SessionState,
    utc_now,
)

__all__ = [
    "PATCH_ADAPTER",
    "AddOperation",
    "ChangeSet",
    "ChatMessage",
    "ChatRole",
    "Checkpoint",
    "DeleteOperation",
    "FileCollection",
    "FileRecord",
    "Patch",
    "PatchOperation",
    "Project",
    "ProjectStatus",
    "SessionState",
    "UpdateOperation",
    "copy_files",
    "files_from_mapping",
    "index_files",
    "utc_now",
]
