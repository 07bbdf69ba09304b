from contextlib import contextmanager
from unittest.mock import MagicMock

import pytest

from package_forge.agents.code_generator import CodeGenerator
from package_forge.models import FileRecord
from package_forge.orchestrator.session import ProjectSession
from package_forge.storage import InMemoryDocumentStore, ProjectRepository


@pytest.fixture
def sample_files():
    return [
        FileRecord(path="index.html", content="<html>\n<body></body>\n</html>"),
        FileRecord(path="src/app.js", content="const a = 1;\nconsole.log(a);"),
        FileRecord(path="README.md", content="# Demo"),
    ]


@pytest.fixture
def store():
    return InMemoryDocumentStore()


@pytest.fixture
def repository(store):
    return ProjectRepository(store)


@pytest.fixture
def stored_project(repository, sample_files):
    """A completed project with the sample files and its initial checkpoint."""
    project = repository.create_project("Build a demo page", user_id="user-1", name="Demo")
    repository.finalize_generation(project.project_id, sample_files)
    return repository.require_project(project.project_id)


@pytest.fixture
def session(repository, stored_project):
    return ProjectSession.load(repository, stored_project.project_id)


@pytest.fixture
def mock_generator():
    """CodeGenerator double; tests set request_patch / request_full_generation."""
    return MagicMock(spec=CodeGenerator)


@pytest.fixture
def no_llm_env(monkeypatch):
    for name in ("ANTHROPIC_API_KEY", "CLAUDE_CODE_OAUTH_TOKEN", "OPENAI_API_KEY"):
        monkeypatch.delenv(name, raising=False)


def make_anthropic_stream(*chunks: str):
    """Return a value for client.messages.stream(...) yielding text chunks."""
    stream = MagicMock()
    stream.text_stream = iter(chunks)

    @contextmanager
    def _stream(**kwargs):
        yield stream

    return _stream


def make_openai_events(*chunks: str):
    """Return a list of streaming chat-completion events carrying text chunks."""
    events = []
    for chunk in chunks:
        event = MagicMock()
        choice = MagicMock()
        choice.delta.content = chunk
        event.choices = [choice]
        events.append(event)
    return events
