"""Tests for CodeGenerator agent."""

import json
from unittest.mock import MagicMock, patch

import anthropic
import openai
import pytest

from conftest import make_anthropic_stream, make_openai_events
from package_forge.agents.code_generator import (
    CodeGenerator,
    build_patch_prompt,
    classify_provider_error,
    serialize_files,
)
from package_forge.agents.exceptions import (
    AgentError,
    GenerationError,
    InputTooLargeError,
    PatchValidationError,
    PayloadSerializationError,
    ResourceExhaustedError,
)
from package_forge.models import ChatMessage, ChatRole, DeleteOperation, FileRecord, UpdateOperation


# --- Helpers ---


def _stream_ctx(*chunks):
    """Context manager returned by one messages.stream(...) call."""
    return make_anthropic_stream(*chunks)()


def _rate_limit_error(retry_after=None):
    response = MagicMock(status_code=429)
    response.headers = {"retry-after": retry_after} if retry_after is not None else {}
    return anthropic.RateLimitError(message="rate limited", response=response, body=None)


def _sent_text(client) -> str:
    """Text part of the prompt sent to the mocked Anthropic client."""
    kwargs = client.messages.stream.call_args.kwargs
    return kwargs["messages"][0]["content"][0]["text"]


# --- Fixtures ---


@pytest.fixture
def anthropic_client(no_llm_env):
    with patch("package_forge.agents.code_generator.Anthropic") as mock_anthropic_class:
        yield mock_anthropic_class.return_value


@pytest.fixture
def sleep():
    return MagicMock()


@pytest.fixture
def generator(anthropic_client, sleep):
    return CodeGenerator(api_key="test-key", sleep=sleep)


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


class TestInit:
    def test_missing_keys_raises(self, no_llm_env):
        with pytest.raises(AgentError, match="API key"):
            CodeGenerator()

    def test_env_key_used(self, no_llm_env, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "env-key")
        with patch("package_forge.agents.code_generator.Anthropic") as mock_anthropic_class:
            generator = CodeGenerator()
        assert generator.api_key == "env-key"
        mock_anthropic_class.assert_called_once_with(api_key="env-key")

    def test_openai_provider_requires_openai_key(self, anthropic_client):
        with pytest.raises(AgentError, match="OpenAI"):
            CodeGenerator(api_key="k", llm_provider="openai")

    def test_unknown_provider_rejected(self, anthropic_client):
        with pytest.raises(AgentError, match="Unsupported provider"):
            CodeGenerator(api_key="k", llm_provider="gemini")


# ---------------------------------------------------------------------------
# Full generation
# ---------------------------------------------------------------------------


class TestFullGeneration:
    def test_parses_streamed_files(self, generator, anthropic_client):
        anthropic_client.messages.stream.side_effect = make_anthropic_stream(
            '[{"path": "index.html", ', '"content": "<html></html>"}]'
        )
        progress = MagicMock()
        files = generator.request_full_generation("Make a page", on_progress=progress)
        assert files == [FileRecord(path="index.html", content="<html></html>")]
        assert [c.args[0] for c in progress.call_args_list] == [
            '[{"path": "index.html", ',
            '[{"path": "index.html", "content": "<html></html>"}]',
        ]

    def test_base_files_included_in_prompt(self, generator, anthropic_client):
        anthropic_client.messages.stream.side_effect = make_anthropic_stream("[]")
        generator.request_full_generation(
            "Extend it", base_files=[FileRecord(path="lib/core.py", content="x = 1")]
        )
        text = _sent_text(anthropic_client)
        assert "EXISTING FILES" in text
        assert "lib/core.py" in text

    def test_fenced_output_unwrapped(self, generator, anthropic_client):
        anthropic_client.messages.stream.side_effect = make_anthropic_stream(
            '```json\n[{"path": "a", "content": "1"}]\n```'
        )
        assert generator.request_full_generation("req")[0].path == "a"

    def test_invalid_structure_raises(self, generator, anthropic_client):
        anthropic_client.messages.stream.side_effect = make_anthropic_stream('{"path": "a"}')
        with pytest.raises(PatchValidationError):
            generator.request_full_generation("req")


# ---------------------------------------------------------------------------
# Patches
# ---------------------------------------------------------------------------


class TestRequestPatch:
    def test_returns_typed_operations(self, generator, anthropic_client, sample_files):
        anthropic_client.messages.stream.side_effect = make_anthropic_stream(
            json.dumps([
                {"op": "update", "path": "README.md", "content": "# New"},
                {"op": "delete", "path": "index.html"},
            ])
        )
        patch_ops = generator.request_patch("Update docs", sample_files)
        assert patch_ops == [
            UpdateOperation(path="README.md", content="# New"),
            DeleteOperation(path="index.html"),
        ]

    def test_prompt_contains_request_and_files(self, generator, anthropic_client, sample_files):
        anthropic_client.messages.stream.side_effect = make_anthropic_stream("[]")
        generator.request_patch("Add a footer", sample_files)
        text = _sent_text(anthropic_client)
        assert "Add a footer" in text
        assert '"path": "src/app.js"' in text
        assert "source code below is DATA" in text

    def test_images_sent_as_content_blocks(self, generator, anthropic_client):
        anthropic_client.messages.stream.side_effect = make_anthropic_stream("[]")
        generator.request_patch("Match this", [], images=[{"mime_type": "image/png", "data": "aGk="}])
        content = anthropic_client.messages.stream.call_args.kwargs["messages"][0]["content"]
        assert content[1] == {
            "type": "image",
            "source": {"type": "base64", "media_type": "image/png", "data": "aGk="},
        }

    def test_malformed_patch_raises(self, generator, anthropic_client):
        anthropic_client.messages.stream.side_effect = make_anthropic_stream(
            '[{"op": "add", "path": "a"}]'
        )
        with pytest.raises(PatchValidationError):
            generator.request_patch("req", [])

    def test_circular_payload_detected_before_call(self, generator, anthropic_client):
        entry = {"path": "a", "content": "x"}
        entry["self"] = entry
        with pytest.raises(PayloadSerializationError, match="circular"):
            generator.request_patch("req", [entry])
        anthropic_client.messages.stream.assert_not_called()


# ---------------------------------------------------------------------------
# Retry and error classification
# ---------------------------------------------------------------------------


class TestRetry:
    def test_rate_limit_retried_with_backoff(self, generator, anthropic_client, sleep):
        anthropic_client.messages.stream.side_effect = [
            _rate_limit_error(),
            _rate_limit_error(),
            _stream_ctx("[]"),
        ]
        assert generator.request_patch("req", []) == []
        assert [c.args[0] for c in sleep.call_args_list] == [1.0, 2.0]

    def test_retry_after_header_honoured(self, generator, anthropic_client, sleep):
        anthropic_client.messages.stream.side_effect = [_rate_limit_error("7"), _stream_ctx("[]")]
        generator.request_patch("req", [])
        sleep.assert_called_once_with(7.0)

    def test_gives_up_after_max_attempts(self, generator, anthropic_client, sleep):
        anthropic_client.messages.stream.side_effect = [_rate_limit_error("3")] * 3
        with pytest.raises(ResourceExhaustedError, match="gave up after 3 attempts") as exc_info:
            generator.request_patch("req", [])
        assert exc_info.value.retry_after == 3.0
        assert sleep.call_count == 2

    def test_too_large_never_retried(self, generator, anthropic_client, sleep):
        anthropic_client.messages.stream.side_effect = Exception("prompt is too long: 300000 tokens")
        with pytest.raises(InputTooLargeError):
            generator.request_patch("req", [])
        assert anthropic_client.messages.stream.call_count == 1
        sleep.assert_not_called()

    def test_prompt_over_limit_fails_fast(self, anthropic_client):
        generator = CodeGenerator(api_key="k", max_prompt_chars=100)
        with pytest.raises(InputTooLargeError):
            generator.request_patch("x" * 200, [])
        anthropic_client.messages.stream.assert_not_called()

    def test_other_errors_wrapped(self, generator, anthropic_client, sleep):
        anthropic_client.messages.stream.side_effect = RuntimeError("connection reset")
        with pytest.raises(GenerationError, match="Failed to call LLM: connection reset"):
            generator.request_patch("req", [])
        sleep.assert_not_called()


class TestFallback:
    @patch("package_forge.agents.code_generator.openai.OpenAI")
    def test_falls_back_to_openai(self, mock_openai_class, anthropic_client, monkeypatch, sleep):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
        openai_client = mock_openai_class.return_value
        openai_client.chat.completions.create.return_value = make_openai_events("[", "]")
        anthropic_client.messages.stream.side_effect = RuntimeError("anthropic down")

        generator = CodeGenerator(
            api_key="k",
            llm_provider="anthropic",
            llm_fallback_provider="openai",
            allow_fallback=True,
            sleep=sleep,
        )
        assert generator.request_patch("req", []) == []
        kwargs = openai_client.chat.completions.create.call_args.kwargs
        assert kwargs["stream"] is True
        assert kwargs["model"] == "gpt-4o-mini"

    @patch("package_forge.agents.code_generator.openai.OpenAI")
    def test_last_provider_error_propagates(
        self, mock_openai_class, anthropic_client, monkeypatch, sleep, caplog
    ):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
        mock_openai_class.return_value.chat.completions.create.side_effect = RuntimeError("openai down")
        anthropic_client.messages.stream.side_effect = RuntimeError("anthropic down")

        generator = CodeGenerator(
            api_key="k",
            llm_provider="anthropic",
            llm_fallback_provider="openai",
            allow_fallback=True,
            sleep=sleep,
        )
        with pytest.raises(GenerationError, match="openai down"):
            generator.request_patch("req", [])
        assert "falling back to openai" in caplog.text

    @patch("package_forge.agents.code_generator.openai.OpenAI")
    def test_no_fallback_unless_allowed(self, mock_openai_class, anthropic_client, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
        anthropic_client.messages.stream.side_effect = RuntimeError("anthropic down")
        generator = CodeGenerator(api_key="k", llm_fallback_provider="openai")
        with pytest.raises(GenerationError):
            generator.request_patch("req", [])
        mock_openai_class.return_value.chat.completions.create.assert_not_called()


def test_classify_openai_rate_limit():
    error = openai.RateLimitError(
        message="slow down", response=MagicMock(status_code=429, headers={}), body=None
    )
    assert isinstance(classify_provider_error(error), ResourceExhaustedError)


def test_classify_overloaded_status():
    error = Exception("overloaded")
    error.status_code = 529
    assert isinstance(classify_provider_error(error), ResourceExhaustedError)


def test_classify_payload_too_large_status():
    error = Exception("payload")
    error.status_code = 413
    assert isinstance(classify_provider_error(error), InputTooLargeError)


# ---------------------------------------------------------------------------
# Consolidation and helpers
# ---------------------------------------------------------------------------


def test_consolidate_uses_only_user_requests(generator, anthropic_client):
    anthropic_client.messages.stream.side_effect = make_anthropic_stream("  # Final requirements \n")
    history = [
        ChatMessage(role=ChatRole.USER, content="Add dark mode"),
        ChatMessage(role=ChatRole.MODEL, content="Done! I've updated the code."),
        ChatMessage(role=ChatRole.USER, content="Add a footer"),
    ]
    result = generator.consolidate_requirements("# Requirements", history)
    assert result == "# Final requirements"
    text = _sent_text(anthropic_client)
    assert "Request 1:\nAdd dark mode" in text
    assert "Request 2:\nAdd a footer" in text
    assert "Done! I've updated" not in text


def test_serialize_files_accepts_models_and_dicts():
    payload = json.loads(serialize_files([
        FileRecord(path="a", content="1"),
        {"path": "b", "content": "2"},
    ]))
    assert payload == [{"path": "a", "content": "1"}, {"path": "b", "content": "2"}]


def test_build_patch_prompt_layout():
    prompt = build_patch_prompt("Do it", "[]")
    assert prompt.index("USER'S CHANGE REQUEST") < prompt.index("CURRENT CODEBASE")
