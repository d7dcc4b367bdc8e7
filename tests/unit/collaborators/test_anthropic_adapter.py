"""
Unit tests for the Anthropic reasoning collaborator.

Coverage:
- Request payload wiring and response normalization against a scripted client.
- SDK exception mapping into the collaborator error taxonomy.
- Lazy SDK import and API key resolution.
"""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass, field

import pytest

from work_order_engine.collaborators.anthropic_adapter import AnthropicCollaborator
from work_order_engine.collaborators.base import (
    CollaboratorAuthenticationError,
    CollaboratorError,
    CollaboratorInvalidRequestError,
    CollaboratorRateLimitError,
    CollaboratorResponseError,
    CollaboratorServiceError,
    CollaboratorTimeoutError,
    CollaboratorUnavailableError,
    ReasoningRequest,
)


@dataclass(slots=True)
class _ScriptedMessages:
    outcomes: deque[object | Exception]
    calls: list[dict[str, object]] = field(default_factory=list)

    async def create(self, **kwargs: object) -> object:
        self.calls.append(dict(kwargs))
        if not self.outcomes:
            raise RuntimeError("scripted anthropic outcomes exhausted")
        outcome = self.outcomes.popleft()
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@dataclass(slots=True)
class _FakeAnthropicClient:
    messages: _ScriptedMessages


class RateLimitError(Exception):
    status_code = 429


class AuthenticationError(Exception):
    status_code = 401


class BadRequestError(Exception):
    status_code = 400


class InternalServerError(Exception):
    status_code = 503


class APITimeoutError(Exception):
    pass


def _adapter(*outcomes: object | Exception) -> tuple[AnthropicCollaborator, _ScriptedMessages]:
    messages = _ScriptedMessages(outcomes=deque(outcomes))
    adapter = AnthropicCollaborator(
        model="claude-test", client=_FakeAnthropicClient(messages=messages)
    )
    return adapter, messages


def _request(**overrides: object) -> ReasoningRequest:
    values: dict[str, object] = {
        "system_prompt": "You are a diagnostician.",
        "user_prompt": "Explain the failure.",
        "max_tokens": 1200,
        "temperature": 0.2,
    }
    values.update(overrides)
    return ReasoningRequest(**values)  # type: ignore[arg-type]


def test_complete_wires_payload_and_joins_text_blocks() -> None:
    adapter, messages = _adapter(
        {
            "id": "msg-1",
            "model": "claude-test-2026",
            "content": [
                {"type": "text", "text": '{"root_cause":'},
                {"type": "tool_use", "id": "toolu-1", "name": "ignored", "input": {}},
                {"type": "text", "text": '"x"}'},
            ],
        }
    )

    response = asyncio.run(adapter.complete(_request()))

    assert response.text == '{"root_cause":\n"x"}'
    assert response.model == "claude-test-2026"
    assert response.request_id == "msg-1"
    assert messages.calls == [
        {
            "model": "claude-test",
            "max_tokens": 1200,
            "temperature": 0.2,
            "system": "You are a diagnostician.",
            "messages": [{"role": "user", "content": "Explain the failure."}],
        }
    ]


def test_request_model_overrides_adapter_default() -> None:
    adapter, messages = _adapter({"content": [{"type": "text", "text": "ok"}]})

    response = asyncio.run(adapter.complete(_request(model="claude-override")))

    assert messages.calls[0]["model"] == "claude-override"
    assert response.model == "claude-override"
    assert response.request_id is None


def test_response_without_text_is_rejected() -> None:
    adapter, _ = _adapter({"id": "msg-2", "content": [{"type": "tool_use", "id": "t"}]})

    with pytest.raises(CollaboratorResponseError, match="code=response_invalid"):
        asyncio.run(adapter.complete(_request()))


@pytest.mark.parametrize(
    ("raised", "expected", "retryable"),
    [
        (RateLimitError("slow down"), CollaboratorRateLimitError, True),
        (AuthenticationError("bad key"), CollaboratorAuthenticationError, False),
        (BadRequestError("prompt too long"), CollaboratorInvalidRequestError, False),
        (InternalServerError("overloaded"), CollaboratorServiceError, True),
        (APITimeoutError("read timed out"), CollaboratorTimeoutError, True),
        (ConnectionResetError("peer reset"), CollaboratorServiceError, True),
    ],
)
def test_sdk_errors_are_normalized(
    raised: Exception, expected: type[CollaboratorError], retryable: bool
) -> None:
    adapter, _ = _adapter(raised)

    with pytest.raises(expected) as excinfo:
        asyncio.run(adapter.complete(_request()))

    assert excinfo.value.provider == "anthropic"
    assert excinfo.value.retryable is retryable
    assert excinfo.value.__cause__ is raised


def test_sdk_missing_raises_unavailable_only_when_called(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    import importlib

    real_import_module = importlib.import_module

    def blocking_import(name: str, package: str | None = None) -> object:
        if name == "anthropic":
            raise ImportError(f"blocked: {name}")
        return real_import_module(name, package)

    monkeypatch.setattr(importlib, "import_module", blocking_import)

    adapter = AnthropicCollaborator(model="claude-test")
    assert adapter.model == "claude-test"

    with pytest.raises(
        CollaboratorUnavailableError,
        match=r"provider=anthropic code=unavailable retryable=false detail=anthropic SDK",
    ):
        asyncio.run(adapter.complete(_request()))


def test_configured_api_key_env_has_no_fallback(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("WOE_CONFIG_ANTHROPIC_KEY", raising=False)
    monkeypatch.setenv("ANTHROPIC_API_KEY", "fallback-key")

    adapter = AnthropicCollaborator(model="claude-test", api_key_env="WOE_CONFIG_ANTHROPIC_KEY")

    with pytest.raises(
        CollaboratorAuthenticationError, match=r"configured env var WOE_CONFIG_ANTHROPIC_KEY"
    ):
        adapter._resolve_api_key()


def test_api_key_resolution_order(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    monkeypatch.setenv("WOE_ANTHROPIC_API_KEY", "secondary")
    monkeypatch.setenv("WOE_CONFIG_ANTHROPIC_KEY", "configured")

    assert AnthropicCollaborator()._resolve_api_key() == "secondary"
    assert (
        AnthropicCollaborator(api_key_env="WOE_CONFIG_ANTHROPIC_KEY")._resolve_api_key()
        == "configured"
    )
    assert AnthropicCollaborator(api_key="explicit")._resolve_api_key() == "explicit"

    monkeypatch.delenv("WOE_ANTHROPIC_API_KEY")
    with pytest.raises(CollaboratorAuthenticationError, match="ANTHROPIC_API_KEY"):
        AnthropicCollaborator()._resolve_api_key()


@pytest.mark.parametrize("kwargs", [{"model": " "}, {"timeout_seconds": 0}])
def test_constructor_validation(kwargs: dict[str, object]) -> None:
    with pytest.raises(ValueError):
        AnthropicCollaborator(**kwargs)  # type: ignore[arg-type]
