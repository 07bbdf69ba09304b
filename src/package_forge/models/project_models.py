"""Project, checkpoint and chat history models."""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from package_forge.models.file_models import FileRecord


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ChatRole(str, Enum):
    """Author of a chat message."""

    USER = "user"
    MODEL = "model"


class ChatMessage(BaseModel):
    """One entry of a project's chat history."""

    model_config = ConfigDict(frozen=True)

    role: ChatRole
    content: str
    timestamp: datetime = Field(default_factory=utc_now)


class Checkpoint(BaseModel):
    """Immutable, fully materialised snapshot taken before a mutation."""

    model_config = ConfigDict(frozen=True)

    checkpoint_id: str
    message: str  # The request that caused the upcoming mutation
    created_at: datetime = Field(default_factory=utc_now)
    files: tuple[FileRecord, ...] = ()


class ProjectStatus(str, Enum):
    """Lifecycle of the initial full generation."""

    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"


class SessionState(str, Enum):
    """Mutation state of an active project session."""

    IDLE = "idle"
    PATCHING = "patching"
    FAILED = "failed"


class Project(BaseModel):
    """A generated project and its current file set."""

    model_config = ConfigDict(frozen=False)

    project_id: str
    name: str
    initial_requirements: str
    user_id: Optional[str] = None
    files: Optional[list[FileRecord]] = None  # None until generation completes
    status: ProjectStatus = ProjectStatus.GENERATING
    generation_log: str = ""
    error: str = ""
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
