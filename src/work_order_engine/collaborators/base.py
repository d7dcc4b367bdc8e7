"""
work-order-engine — reasoning collaborator interface

File: src/work_order_engine/collaborators/base.py
Last updated: 2026-10-18

Purpose
- Request/response models and the normalized error taxonomy for the external reasoning
  collaborator the diagnostician asks for root-cause analyses.

Functional requirements
- Response text is untrusted; callers parse and validate it themselves.
- Every provider failure surfaces as a ``CollaboratorError`` subclass with a stable
  machine-readable ``code`` and a ``retryable`` flag.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Final, Protocol, runtime_checkable

_MAX_DETAIL_CHARS: Final[int] = 1000


def _validate_non_empty_str(value: str, field_name: str, *, strip: bool = True) -> str:
    if not isinstance(value, str):
        raise TypeError(f"{field_name} must be a string")
    normalized = value.strip() if strip else value
    if not normalized.strip():
        raise ValueError(f"{field_name} cannot be empty")
    return normalized


def _validate_optional_str(value: str | None, field_name: str) -> str | None:
    if value is None:
        return None
    return _validate_non_empty_str(value, field_name)


def _normalize_detail(detail: str) -> str:
    text = " ".join(str(detail).split()) or "unknown error"
    if len(text) > _MAX_DETAIL_CHARS:
        return text[: _MAX_DETAIL_CHARS - 3] + "..."
    return text


@dataclass(frozen=True, slots=True)
class ReasoningRequest:
    system_prompt: str
    user_prompt: str
    max_tokens: int = 4000
    temperature: float = 0.3
    model: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(
            self,
            "system_prompt",
            _validate_non_empty_str(
                self.system_prompt, "ReasoningRequest.system_prompt", strip=False
            ),
        )
        object.__setattr__(
            self,
            "user_prompt",
            _validate_non_empty_str(
                self.user_prompt, "ReasoningRequest.user_prompt", strip=False
            ),
        )
        if isinstance(self.max_tokens, bool) or not isinstance(self.max_tokens, int):
            raise TypeError("ReasoningRequest.max_tokens must be an integer")
        if self.max_tokens <= 0:
            raise ValueError("ReasoningRequest.max_tokens must be > 0")
        if not 0.0 <= float(self.temperature) <= 2.0:
            raise ValueError("ReasoningRequest.temperature must be within [0, 2]")
        object.__setattr__(self, "temperature", float(self.temperature))
        object.__setattr__(
            self, "model", _validate_optional_str(self.model, "ReasoningRequest.model")
        )


@dataclass(frozen=True, slots=True)
class ReasoningResponse:
    text: str
    model: str
    request_id: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.text, str):
            raise TypeError("ReasoningResponse.text must be a string")
        object.__setattr__(
            self, "model", _validate_non_empty_str(self.model, "ReasoningResponse.model")
        )
        object.__setattr__(
            self,
            "request_id",
            _validate_optional_str(self.request_id, "ReasoningResponse.request_id"),
        )


@runtime_checkable
class ReasoningCollaborator(Protocol):
    """Anything that can turn a prompt pair into untrusted text."""

    async def complete(self, request: ReasoningRequest) -> ReasoningResponse:
        """Return the collaborator's raw answer for ``request``."""


class CollaboratorError(RuntimeError):
    """Base normalized collaborator error with deterministic machine-readable fields."""

    def __init__(
        self,
        *,
        provider: str,
        code: str,
        detail: str,
        retryable: bool,
        http_status: int | None = None,
    ) -> None:
        self.provider = _validate_non_empty_str(provider, "provider")
        self.code = _validate_non_empty_str(code, "code")
        self.detail = _normalize_detail(detail)
        self.retryable = bool(retryable)
        self.http_status = http_status

        parts = [
            f"provider={self.provider}",
            f"code={self.code}",
            f"retryable={str(self.retryable).lower()}",
        ]
        if self.http_status is not None:
            parts.append(f"http_status={self.http_status}")
        parts.append(f"detail={self.detail}")
        super().__init__(" ".join(parts))


class CollaboratorUnavailableError(CollaboratorError):
    """Raised when the provider SDK or runtime is missing."""

    def __init__(self, detail: str, *, provider: str = "collaborator") -> None:
        super().__init__(provider=provider, code="unavailable", detail=detail, retryable=False)


class CollaboratorAuthenticationError(CollaboratorError):
    def __init__(
        self,
        detail: str,
        *,
        provider: str = "collaborator",
        http_status: int | None = None,
    ) -> None:
        super().__init__(
            provider=provider,
            code="auth",
            detail=detail,
            retryable=False,
            http_status=http_status,
        )


class CollaboratorInvalidRequestError(CollaboratorError):
    def __init__(
        self,
        detail: str,
        *,
        provider: str = "collaborator",
        http_status: int | None = None,
    ) -> None:
        super().__init__(
            provider=provider,
            code="invalid_request",
            detail=detail,
            retryable=False,
            http_status=http_status,
        )


class CollaboratorRateLimitError(CollaboratorError):
    def __init__(
        self,
        detail: str,
        *,
        provider: str = "collaborator",
        http_status: int | None = 429,
    ) -> None:
        super().__init__(
            provider=provider,
            code="rate_limit",
            detail=detail,
            retryable=True,
            http_status=http_status,
        )


class CollaboratorTimeoutError(CollaboratorError):
    def __init__(self, detail: str, *, provider: str = "collaborator") -> None:
        super().__init__(provider=provider, code="timeout", detail=detail, retryable=True)


class CollaboratorServiceError(CollaboratorError):
    def __init__(
        self,
        detail: str,
        *,
        provider: str = "collaborator",
        retryable: bool = True,
        http_status: int | None = None,
    ) -> None:
        super().__init__(
            provider=provider,
            code="service",
            detail=detail,
            retryable=retryable,
            http_status=http_status,
        )


class CollaboratorResponseError(CollaboratorError):
    """Raised when the provider answer has no usable text."""

    def __init__(self, detail: str, *, provider: str = "collaborator") -> None:
        super().__init__(provider=provider, code="response_invalid", detail=detail, retryable=False)


class StaticCollaborator:
    """Returns canned responses in order, repeating the last one; for offline runs and tests."""

    provider_name = "static"

    def __init__(self, responses: str | Sequence[str], *, model: str = "static") -> None:
        canned = (responses,) if isinstance(responses, str) else tuple(responses)
        if not canned:
            raise ValueError("responses must not be empty")
        self._responses = canned
        self._model = _validate_non_empty_str(model, "model")
        self._index = 0
        self.requests: list[ReasoningRequest] = []

    async def complete(self, request: ReasoningRequest) -> ReasoningResponse:
        self.requests.append(request)
        text = self._responses[min(self._index, len(self._responses) - 1)]
        self._index += 1
        return ReasoningResponse(
            text=text,
            model=request.model or self._model,
            request_id=f"static-{self._index}",
        )


__all__ = [
    "CollaboratorAuthenticationError",
    "CollaboratorError",
    "CollaboratorInvalidRequestError",
    "CollaboratorRateLimitError",
    "CollaboratorResponseError",
    "CollaboratorServiceError",
    "CollaboratorTimeoutError",
    "CollaboratorUnavailableError",
    "ReasoningCollaborator",
    "ReasoningRequest",
    "ReasoningResponse",
    "StaticCollaborator",
]
