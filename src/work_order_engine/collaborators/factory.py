"""Build the configured reasoning collaborator from the ``collaborator`` config section."""

from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Final

from work_order_engine.collaborators.anthropic_adapter import DEFAULT_MODEL, AnthropicCollaborator
from work_order_engine.collaborators.base import ReasoningCollaborator, StaticCollaborator

OFFLINE_RESPONSE: Final[str] = json.dumps(
    {
        "root_cause": "Offline mode: no reasoning collaborator configured",
        "contributing_factors": [],
        "recommended_fix": "Manual review required",
        "confidence": 0.0,
        "fix_tasks": [],
    },
    sort_keys=True,
)


def build_collaborator(
    collaborator_config: Mapping[str, object],
    *,
    timeout_seconds: float | None = None,
) -> ReasoningCollaborator:
    """Return a collaborator for ``provider`` (``anthropic`` or ``static``)."""

    provider = str(collaborator_config.get("provider", "anthropic")).strip().lower()
    model = collaborator_config.get("model")

    if provider == "static":
        canned = collaborator_config.get("static_response")
        response = canned if isinstance(canned, str) and canned.strip() else OFFLINE_RESPONSE
        return StaticCollaborator(response, model=model if isinstance(model, str) else "static")

    if provider == "anthropic":
        base_url = collaborator_config.get("base_url")
        api_key_env = collaborator_config.get("api_key_env")
        return AnthropicCollaborator(
            model=model if isinstance(model, str) and model.strip() else DEFAULT_MODEL,
            api_key_env=api_key_env if isinstance(api_key_env, str) else None,
            base_url=base_url if isinstance(base_url, str) else None,
            timeout_seconds=timeout_seconds,
        )

    raise ValueError(f"unsupported collaborator provider: {provider!r}")


__all__ = ["OFFLINE_RESPONSE", "build_collaborator"]
