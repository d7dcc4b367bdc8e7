"""Stable constants shared across the engine."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Final

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1
STATE_DB_SCHEMA_VERSION: Final[int] = 1

# Default runtime paths (relative to the working directory unless overridden by config).
STATE_DIR: Final[PurePosixPath] = PurePosixPath("state")
DEFAULT_STATE_DB: Final[PurePosixPath] = STATE_DIR / "work_orders.sqlite3"

# Work order slugs.
SLUG_PREFIX: Final[str] = "WO-"
SLUG_WIDTH: Final[int] = 4

# Triage routing targets.
ESCALATE_TO_OPS: Final[str] = "ops"
ESCALATE_TO_DIAGNOSTICIAN: Final[str] = "diagnostician"

# Task queue topics.
DIAGNOSE_TOPIC: Final[str] = "diagnose"

# Actors recorded on audit rows written by the engine itself.
SYSTEM_ACTOR: Final[str] = "system"
SETTLEMENT_ACTOR: Final[str] = "system:settlement"
MONITOR_ACTOR: Final[str] = "system:monitor"
DIAGNOSTICIAN_ACTOR: Final[str] = "system:diagnostician"

# Execution-log phases with engine-level meaning.
COMPLETION_PHASES: Final[frozenset[str]] = frozenset({"execution_complete", "failed"})
KEEPALIVE_PHASES: Final[frozenset[str]] = frozenset({"checkpoint", "continuation"})
STREAM_PHASE: Final[str] = "stream"

__all__ = [
    "COMPLETION_PHASES",
    "CONFIG_SCHEMA_VERSION",
    "DEFAULT_STATE_DB",
    "DIAGNOSE_TOPIC",
    "DIAGNOSTICIAN_ACTOR",
    "ESCALATE_TO_DIAGNOSTICIAN",
    "ESCALATE_TO_OPS",
    "KEEPALIVE_PHASES",
    "MONITOR_ACTOR",
    "SETTLEMENT_ACTOR",
    "SLUG_PREFIX",
    "SLUG_WIDTH",
    "STATE_DB_SCHEMA_VERSION",
    "STATE_DIR",
    "STREAM_PHASE",
    "SYSTEM_ACTOR",
]
