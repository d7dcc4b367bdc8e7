"""
work-order-engine — Anthropic reasoning collaborator

File: src/work_order_engine/collaborators/anthropic_adapter.py
Last updated: 2026-10-18

Purpose
- Messages-API adapter used by the diagnostician for root-cause analysis.

Functional requirements
- The ``anthropic`` SDK is optional; it is imported on first use and a missing install
  surfaces as ``CollaboratorUnavailableError``.
- SDK exceptions are mapped into the collaborator error taxonomy.

Non-functional requirements
- No secrets in logs or error details.
"""

from __future__ import annotations

import asyncio
import importlib
import os
from collections.abc import Mapping, Sequence
from typing import Final, Protocol, cast

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
    ReasoningResponse,
)

DEFAULT_MODEL: Final[str] = "claude-sonnet-4-5"
API_KEY_ENV_VARS: Final[tuple[str, ...]] = ("ANTHROPIC_API_KEY", "WOE_ANTHROPIC_API_KEY")


class _AnthropicMessagesAPI(Protocol):
    async def create(self, **kwargs: object) -> object: ...


class _AnthropicClient(Protocol):
    messages: _AnthropicMessagesAPI


class AnthropicCollaborator:
    """Anthropic messages adapter with optional SDK dependency and injected client support."""

    provider_name = "anthropic"

    def __init__(
        self,
        *,
        model: str = DEFAULT_MODEL,
        api_key: str | None = None,
        api_key_env: str | None = None,
        base_url: str | None = None,
        timeout_seconds: float | None = None,
        client: _AnthropicClient | None = None,
    ) -> None:
        if not isinstance(model, str) or not model.strip():
            raise ValueError("model cannot be empty")
        if timeout_seconds is not None and timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        self.model = model.strip()
        self._api_key = api_key
        self._api_key_env = api_key_env
        self._base_url = base_url
        self._timeout_seconds = timeout_seconds
        self._client = client

    async def complete(self, request: ReasoningRequest) -> ReasoningResponse:
        client = self._ensure_client()
        payload: dict[str, object] = {
            "model": request.model or self.model,
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
            "system": request.system_prompt,
            "messages": [{"role": "user", "content": request.user_prompt}],
        }
        try:
            raw = await client.messages.create(**payload)
        except CollaboratorError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise self._map_exception(exc) from exc

        text = _extract_text(raw)
        if not text:
            raise CollaboratorResponseError(
                "response does not contain text content", provider=self.provider_name
            )
        return ReasoningResponse(
            text=text,
            model=_read_str(raw, "model") or str(payload["model"]),
            request_id=_read_str(raw, "id") or _read_str(raw, "request_id"),
        )

    def _ensure_client(self) -> _AnthropicClient:
        if self._client is None:
            self._client = self._create_default_client()
        return self._client

    def _create_default_client(self) -> _AnthropicClient:
        try:
            anthropic_module = importlib.import_module("anthropic")
        except ImportError as exc:
            raise CollaboratorUnavailableError(
                "anthropic SDK is not installed; install the 'anthropic' extra",
                provider=self.provider_name,
            ) from exc

        async_anthropic = getattr(anthropic_module, "AsyncAnthropic", None)
        if async_anthropic is None:
            raise CollaboratorUnavailableError(
                "anthropic SDK does not expose AsyncAnthropic", provider=self.provider_name
            )

        init_kwargs: dict[str, object] = {"api_key": self._resolve_api_key()}
        if self._base_url is not None:
            init_kwargs["base_url"] = self._base_url
        if self._timeout_seconds is not None:
            init_kwargs["timeout"] = self._timeout_seconds

        client = async_anthropic(**init_kwargs)
        if not hasattr(client, "messages"):
            raise CollaboratorUnavailableError(
                "anthropic client missing messages API", provider=self.provider_name
            )
        return cast("_AnthropicClient", client)

    def _resolve_api_key(self) -> str:
        if self._api_key is not None and self._api_key.strip():
            return self._api_key

        if self._api_key_env is not None:
            configured = os.getenv(self._api_key_env)
            if configured is None or not configured.strip():
                raise CollaboratorAuthenticationError(
                    f"missing Anthropic API key in configured env var {self._api_key_env}",
                    provider=self.provider_name,
                    http_status=401,
                )
            return configured

        for name in API_KEY_ENV_VARS:
            candidate = os.getenv(name)
            if candidate is not None and candidate.strip():
                return candidate
        raise CollaboratorAuthenticationError(
            "missing Anthropic API key; set " + " or ".join(API_KEY_ENV_VARS),
            provider=self.provider_name,
            http_status=401,
        )

    def _map_exception(self, exc: Exception) -> CollaboratorError:
        if isinstance(exc, CollaboratorError):
            return exc

        status_code = _read_status_code(exc)
        class_name = exc.__class__.__name__.lower()
        detail = _exception_detail(exc)

        if status_code in {401, 403} or "auth" in class_name or "permission" in class_name:
            return CollaboratorAuthenticationError(
                detail, provider=self.provider_name, http_status=status_code
            )
        if status_code == 429 or "ratelimit" in class_name:
            return CollaboratorRateLimitError(
                detail, provider=self.provider_name, http_status=status_code
            )
        if isinstance(exc, asyncio.TimeoutError) or "timeout" in class_name:
            return CollaboratorTimeoutError(detail, provider=self.provider_name)
        if status_code is not None and status_code in {400, 404, 409, 413, 422}:
            return CollaboratorInvalidRequestError(
                detail, provider=self.provider_name, http_status=status_code
            )
        if "badrequest" in class_name or "invalidrequest" in class_name:
            return CollaboratorInvalidRequestError(detail, provider=self.provider_name)
        if status_code is not None and status_code >= 500:
            return CollaboratorServiceError(
                detail, provider=self.provider_name, retryable=True, http_status=status_code
            )
        return CollaboratorServiceError(detail, provider=self.provider_name, retryable=True)


def _extract_text(raw_response: object) -> str:
    chunks: list[str] = []
    for item in _read_sequence(raw_response, "content"):
        if (_read_str(item, "type") or "").lower() != "text":
            continue
        text = _read_str(item, "text")
        if text:
            chunks.append(text)
    return "\n".join(chunks)


def _exception_detail(exc: BaseException) -> str:
    text = str(exc).strip()
    if text:
        return " ".join(text.split())
    return exc.__class__.__name__


def _read_status_code(exc: BaseException) -> int | None:
    for key in ("status_code", "status", "http_status"):
        value = getattr(exc, key, None)
        if isinstance(value, int):
            return value
    response = getattr(exc, "response", None)
    if response is not None:
        nested = getattr(response, "status_code", None)
        if isinstance(nested, int):
            return nested
    return None


def _read_value(value: object, key: str) -> object | None:
    if isinstance(value, Mapping):
        return cast("object | None", value.get(key))
    return cast("object | None", getattr(value, key, None))


def _read_sequence(value: object, key: str) -> tuple[object, ...]:
    candidate = _read_value(value, key)
    if isinstance(candidate, Sequence) and not isinstance(candidate, (str, bytes, bytearray)):
        return tuple(candidate)
    return ()


def _read_str(value: object, key: str) -> str | None:
    candidate = _read_value(value, key)
    if isinstance(candidate, str) and candidate.strip():
        return candidate
    return None


__all__ = ["API_KEY_ENV_VARS", "DEFAULT_MODEL", "AnthropicCollaborator"]
