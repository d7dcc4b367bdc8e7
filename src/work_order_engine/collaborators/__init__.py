"""Reasoning collaborator boundary and concrete adapters."""

from work_order_engine.collaborators.base import (
    CollaboratorAuthenticationError,
    CollaboratorError,
    CollaboratorInvalidRequestError,
    CollaboratorRateLimitError,
    CollaboratorResponseError,
    CollaboratorServiceError,
    CollaboratorTimeoutError,
    CollaboratorUnavailableError,
    ReasoningCollaborator,
    ReasoningRequest,
    ReasoningResponse,
    StaticCollaborator,
)
from work_order_engine.collaborators.factory import OFFLINE_RESPONSE, build_collaborator

__all__ = [
    "OFFLINE_RESPONSE",
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
    "build_collaborator",
]
