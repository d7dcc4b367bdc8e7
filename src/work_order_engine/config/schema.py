"""
work-order-engine — configuration schema and validation.

File: src/work_order_engine/config/schema.py
Last updated: 2026-10-18

Purpose
- Define authoritative configuration defaults and strict validation rules.

What should be included in this file
- Schema versioning and migration guidance.
- Per-section field rules: type, bounds, enums, optional keys.
- Profile overlay validation and deterministic deep-merge helpers.
- Redaction rules for sensitive fields.

Functional requirements
- Validate config payloads and return structured errors (field path + message).
- Reject embedded secrets; API keys are referenced through ``*_env`` keys only.

Non-functional requirements
- Keep rules deterministic and easy to audit.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Literal, NotRequired, TypedDict

from work_order_engine.constants import CONFIG_SCHEMA_VERSION, DEFAULT_STATE_DB

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION
BUILTIN_PROFILE_NAMES: Final[tuple[str, ...]] = ("offline",)
COLLABORATOR_PROVIDERS: Final[tuple[str, ...]] = ("anthropic", "static")
LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR")

_ENV_NAME_PATTERN = re.compile(r"^[A-Z_][A-Z0-9_]*$")
_PROFILE_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9_-]*$")
_CAMEL_CASE_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")

_SENSITIVE_KEY_TOKENS: Final[frozenset[str]] = frozenset(
    {
        "secret",
        "token",
        "password",
        "passwd",
        "apikey",
        "private",
        "credential",
        "credentials",
        "auth",
    }
)
_SENSITIVE_KEY_PHRASES: Final[tuple[str, ...]] = (
    "api_key",
    "access_token",
    "client_secret",
    "private_key",
    "password",
    "secret",
)

# Config paths that are normalized relative to the config file location.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("paths", "state_db"),
    ("paths", "log_dir"),
    ("paths", "signatures_file"),
)


class MetaConfig(TypedDict):
    schema_version: int


class PathsConfig(TypedDict):
    state_db: str
    log_dir: NotRequired[str]
    signatures_file: NotRequired[str]


class MonitorConfig(TypedDict):
    stuck_after_minutes: int
    activity_window_minutes: int
    orphan_after_minutes: int
    checkpoint_grace_minutes: int
    spiral_min_turns: int
    spiral_read_ratio: float
    exec_log_scan_limit: int
    interval_seconds: float
    correlation_escalation_threshold: int


class DiagnosticianConfig(TypedDict):
    batch_size: int
    exec_log_tail: int
    lesson_limit: int
    claim_lease_seconds: int
    max_tokens: int
    temperature: float
    collaborator_timeout_seconds: float


class CollaboratorConfig(TypedDict):
    provider: Literal["anthropic", "static"]
    model: str
    api_key_env: str
    base_url: NotRequired[str]
    static_response: NotRequired[str]


class TaskQueueConfig(TypedDict):
    max_attempts: int
    lease_seconds: int
    retry_delay_seconds: int
    poll_interval_seconds: float


class ObservabilityConfig(TypedDict):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"]
    json_logs: bool
    redact_secrets: bool


class ProfileOverlay(TypedDict, total=False):
    paths: dict[str, object]
    monitor: dict[str, object]
    diagnostician: dict[str, object]
    collaborator: dict[str, object]
    task_queue: dict[str, object]
    observability: dict[str, object]


class EngineConfig(TypedDict):
    meta: MetaConfig
    paths: PathsConfig
    monitor: MonitorConfig
    diagnostician: DiagnosticianConfig
    collaborator: CollaboratorConfig
    task_queue: TaskQueueConfig
    observability: ObservabilityConfig
    profiles: NotRequired[dict[str, ProfileOverlay]]


DEFAULT_CONFIG: Final[EngineConfig] = {
    "meta": {"schema_version": ConfigSchemaVersion},
    "paths": {"state_db": DEFAULT_STATE_DB.as_posix()},
    "monitor": {
        "stuck_after_minutes": 30,
        "activity_window_minutes": 10,
        "orphan_after_minutes": 10,
        "checkpoint_grace_minutes": 15,
        "spiral_min_turns": 10,
        "spiral_read_ratio": 0.5,
        "exec_log_scan_limit": 50,
        "interval_seconds": 300.0,
        "correlation_escalation_threshold": 3,
    },
    "diagnostician": {
        "batch_size": 5,
        "exec_log_tail": 20,
        "lesson_limit": 10,
        "claim_lease_seconds": 900,
        "max_tokens": 4000,
        "temperature": 0.3,
        "collaborator_timeout_seconds": 120.0,
    },
    "collaborator": {
        "provider": "anthropic",
        "model": "claude-sonnet-4-5",
        "api_key_env": "ANTHROPIC_API_KEY",
    },
    "task_queue": {
        "max_attempts": 5,
        "lease_seconds": 300,
        "retry_delay_seconds": 60,
        "poll_interval_seconds": 5.0,
    },
    "observability": {
        "log_level": "INFO",
        "json_logs": True,
        "redact_secrets": True,
    },
    "profiles": {
        "offline": {
            "collaborator": {"provider": "static"},
            "observability": {"json_logs": False},
        },
    },
}


@dataclass(frozen=True, slots=True)
class _Field:
    kind: Literal["int", "float", "bool", "str", "path", "env", "enum"]
    minimum: float | None = None
    maximum: float | None = None
    choices: tuple[str, ...] = ()
    required: bool = True


_SECTIONS: Final[dict[str, dict[str, _Field]]] = {
    "meta": {"schema_version": _Field("int", minimum=1)},
    "paths": {
        "state_db": _Field("path"),
        "log_dir": _Field("path", required=False),
        "signatures_file": _Field("path", required=False),
    },
    "monitor": {
        "stuck_after_minutes": _Field("int", minimum=0),
        "activity_window_minutes": _Field("int", minimum=0),
        "orphan_after_minutes": _Field("int", minimum=0),
        "checkpoint_grace_minutes": _Field("int", minimum=0),
        "spiral_min_turns": _Field("int", minimum=1),
        "spiral_read_ratio": _Field("float", minimum=0.0, maximum=1.0),
        "exec_log_scan_limit": _Field("int", minimum=1),
        "interval_seconds": _Field("float", minimum=1.0),
        "correlation_escalation_threshold": _Field("int", minimum=1),
    },
    "diagnostician": {
        "batch_size": _Field("int", minimum=1),
        "exec_log_tail": _Field("int", minimum=1),
        "lesson_limit": _Field("int", minimum=1),
        "claim_lease_seconds": _Field("int", minimum=1),
        "max_tokens": _Field("int", minimum=1),
        "temperature": _Field("float", minimum=0.0, maximum=2.0),
        "collaborator_timeout_seconds": _Field("float", minimum=1.0),
    },
    "collaborator": {
        "provider": _Field("enum", choices=COLLABORATOR_PROVIDERS),
        "model": _Field("str"),
        "api_key_env": _Field("env"),
        "base_url": _Field("str", required=False),
        "static_response": _Field("str", required=False),
    },
    "task_queue": {
        "max_attempts": _Field("int", minimum=1),
        "lease_seconds": _Field("int", minimum=1),
        "retry_delay_seconds": _Field("int", minimum=0),
        "poll_interval_seconds": _Field("float", minimum=0.1),
    },
    "observability": {
        "log_level": _Field("enum", choices=LOG_LEVELS),
        "json_logs": _Field("bool"),
        "redact_secrets": _Field("bool"),
    },
}
_OVERLAY_SECTIONS: Final[frozenset[str]] = frozenset(_SECTIONS) - {"meta"}


def optional_fields() -> tuple[tuple[tuple[str, str], str], ...]:
    """Optional keys as ``((section, key), kind)`` pairs, for env binding discovery."""

    return tuple(
        ((section, key), spec.kind)
        for section, fields in _SECTIONS.items()
        for key, spec in fields.items()
        if not spec.required
    )


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """Single structured validation failure."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Raised when strict config validation fails."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        if not self.issues:
            rendered = "unknown validation failure"
        else:
            rendered = "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
        super().__init__(f"invalid config:\n{rendered}")


class _IssueCollector:
    __slots__ = ("_items",)

    def __init__(self) -> None:
        self._items: list[ConfigValidationIssue] = []

    def add(self, path: str, message: str) -> None:
        self._items.append(ConfigValidationIssue(path=path, message=message))

    def items(self) -> tuple[ConfigValidationIssue, ...]:
        return tuple(self._items)

    @property
    def has_issues(self) -> bool:
        return bool(self._items)


def default_config() -> EngineConfig:
    """Return a deep copy of the built-in defaults."""

    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "upgrade work_order_engine.toml to the current schema"
        )
    if found_version > ConfigSchemaVersion:
        return (
            f"schema version {found_version} is newer than supported {ConfigSchemaVersion}; "
            "upgrade the work-order-engine runtime"
        )
    return "schema version is current"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deterministically deep-merge ``overlay`` onto ``base``."""

    merged = _deep_copy_value(base)
    _merge_into(merged, overlay)
    return merged


def apply_profile_overlay(config: Mapping[str, object], profile: str | None) -> dict[str, Any]:
    """Apply a named profile overlay and re-validate the result."""

    materialized: dict[str, Any] = _deep_copy_value(config)
    selected = (profile or "").strip()
    if not selected:
        return materialized

    profiles = materialized.get("profiles")
    overlay = profiles.get(selected) if isinstance(profiles, Mapping) else None
    if overlay is None:
        raise ConfigValidationError(
            (ConfigValidationIssue("profiles", f"profile {selected!r} is not defined"),)
        )
    if not isinstance(overlay, Mapping):
        raise ConfigValidationError(
            (ConfigValidationIssue(f"profiles.{selected}", "profile overlay must be an object"),)
        )
    return assert_valid_config(merge_config(materialized, overlay))


def validate_config(config: Mapping[str, object] | object) -> ConfigValidationResult:
    """Validate config and return structured issues with deterministic paths."""

    issues = _IssueCollector()
    root = _as_object(config, "<root>", issues)
    if root is None:
        return ConfigValidationResult(config=None, issues=issues.items())

    allowed = {*_SECTIONS, "profiles"}
    _reject_unknown_keys(root, allowed, "", issues)
    _require_keys(root, set(_SECTIONS), "", issues)

    normalized: dict[str, Any] = {}
    for section in sorted(_SECTIONS):
        raw = root.get(section)
        if raw is None:
            continue
        section_obj = _as_object(raw, section, issues)
        if section_obj is not None:
            normalized[section] = _validate_section(
                section_obj, section, _SECTIONS[section], issues, partial=False
            )

    meta = normalized.get("meta", {})
    version = meta.get("schema_version")
    if isinstance(version, int) and version != ConfigSchemaVersion:
        issues.add("meta.schema_version", migration_guidance(version))

    if "profiles" in root:
        profiles = _as_object(root["profiles"], "profiles", issues)
        if profiles is not None:
            normalized["profiles"] = _validate_profiles(profiles, issues)

    if issues.has_issues:
        return ConfigValidationResult(config=None, issues=issues.items())
    return ConfigValidationResult(config=normalized, issues=())


def assert_valid_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Validate config and raise ``ConfigValidationError`` on failure."""

    result = validate_config(config)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def redact_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Return a redacted copy suitable for logs and ``woe config`` output."""

    if not isinstance(config, Mapping):
        return {}
    redacted = _redact_value(config)
    return redacted if isinstance(redacted, dict) else {}


def looks_sensitive_key(key: str) -> bool:
    normalized = _normalize_key(key)
    if normalized.endswith("_env"):
        return False
    if any(phrase in normalized for phrase in _SENSITIVE_KEY_PHRASES):
        return True
    tokens = tuple(token for token in normalized.split("_") if token)
    return any(token in _SENSITIVE_KEY_TOKENS for token in tokens)


def _validate_profiles(payload: Mapping[str, object], issues: _IssueCollector) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for name in sorted(payload):
        profile_path = _join("profiles", name)
        if not _PROFILE_NAME_PATTERN.fullmatch(name):
            issues.add(profile_path, "profile name must match ^[a-z][a-z0-9_-]*$")
            continue
        overlay = _as_object(payload[name], profile_path, issues)
        if overlay is None:
            continue
        _reject_unknown_keys(overlay, set(_OVERLAY_SECTIONS), profile_path, issues)
        validated: dict[str, Any] = {}
        for section in sorted(_OVERLAY_SECTIONS):
            if section not in overlay:
                continue
            section_path = _join(profile_path, section)
            section_obj = _as_object(overlay[section], section_path, issues)
            if section_obj is not None:
                validated[section] = _validate_section(
                    section_obj, section_path, _SECTIONS[section], issues, partial=True
                )
        out[name] = validated
    return out


def _validate_section(
    payload: Mapping[str, object],
    path: str,
    fields: Mapping[str, _Field],
    issues: _IssueCollector,
    *,
    partial: bool,
) -> dict[str, Any]:
    _reject_unknown_keys(payload, set(fields), path, issues)
    if not partial:
        _require_keys(payload, {key for key, spec in fields.items() if spec.required}, path, issues)

    out: dict[str, Any] = {}
    for key in sorted(payload):
        spec = fields.get(key)
        if spec is None:
            continue
        parsed = _parse_field(payload[key], _join(path, key), spec, issues)
        if parsed is not None:
            out[key] = parsed
    return out


def _parse_field(value: object, path: str, spec: _Field, issues: _IssueCollector) -> object:
    if spec.kind == "int":
        return _as_int(value, path, issues, minimum=spec.minimum)
    if spec.kind == "float":
        return _as_float(value, path, issues, minimum=spec.minimum, maximum=spec.maximum)
    if spec.kind == "bool":
        return _as_bool(value, path, issues)
    if spec.kind == "path":
        return _as_path_text(value, path, issues)
    if spec.kind == "env":
        return _as_env_name(value, path, issues)
    if spec.kind == "enum":
        return _as_enum(value, path, issues, allowed_values=spec.choices)
    return _as_str(value, path, issues)


def _as_object(value: object, path: str, issues: _IssueCollector) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.add(path, f"expected object, got {type(value).__name__}")
        return None
    out: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            issues.add(path, f"object key must be string, got {type(key).__name__}")
            continue
        out[key] = item
    return out


def _as_str(value: object, path: str, issues: _IssueCollector) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    parsed = value.strip()
    if not parsed:
        issues.add(path, "must not be empty")
        return None
    return parsed


def _as_path_text(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is not None and "\x00" in parsed:
        issues.add(path, "must not contain NUL bytes")
        return None
    return parsed


def _as_env_name(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is not None and not _ENV_NAME_PATTERN.fullmatch(parsed):
        issues.add(path, "must be an env var name (example: ANTHROPIC_API_KEY)")
        return None
    return parsed


def _as_bool(value: object, path: str, issues: _IssueCollector) -> bool | None:
    if isinstance(value, bool):
        return value
    issues.add(path, f"expected boolean, got {type(value).__name__}")
    return None


def _as_int(
    value: object, path: str, issues: _IssueCollector, *, minimum: float | None = None
) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        issues.add(path, f"expected integer, got {type(value).__name__}")
        return None
    if minimum is not None and value < minimum:
        issues.add(path, f"must be >= {minimum:g}")
        return None
    return value


def _as_float(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: float | None = None,
    maximum: float | None = None,
) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        issues.add(path, f"expected number, got {type(value).__name__}")
        return None
    parsed = float(value)
    if not math.isfinite(parsed):
        issues.add(path, "must be finite")
        return None
    if minimum is not None and parsed < minimum:
        issues.add(path, f"must be >= {minimum:g}")
        return None
    if maximum is not None and parsed > maximum:
        issues.add(path, f"must be <= {maximum:g}")
        return None
    return parsed


def _as_enum(
    value: object, path: str, issues: _IssueCollector, *, allowed_values: tuple[str, ...]
) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if parsed not in allowed_values:
        expected = ", ".join(sorted(allowed_values))
        issues.add(path, f"invalid value {parsed!r}; expected one of: {expected}")
        return None
    return parsed


def _reject_unknown_keys(
    payload: Mapping[str, object], allowed: set[str], path: str, issues: _IssueCollector
) -> None:
    for key in sorted(payload):
        if key in allowed:
            continue
        key_path = _join(path, key)
        if looks_sensitive_key(key):
            issues.add(
                key_path,
                "embedded secret values are forbidden; use an *_env key with an env var name",
            )
        else:
            issues.add(key_path, "unknown field")


def _require_keys(
    payload: Mapping[str, object], required: set[str], path: str, issues: _IssueCollector
) -> None:
    for key in sorted(required):
        if key not in payload:
            issues.add(_join(path, key), "missing required field")


def _normalize_key(key: str) -> str:
    with_boundaries = _CAMEL_CASE_BOUNDARY.sub(r"\1_\2", key.strip())
    return _NON_ALNUM.sub("_", with_boundaries.lower()).strip("_")


def _join(path: str, key: str) -> str:
    return f"{path}.{key}" if path else key


def _merge_into(target: dict[str, Any], overlay: Mapping[str, object]) -> None:
    for key in sorted(overlay):
        value = overlay[key]
        existing = target.get(key)
        if isinstance(value, Mapping) and isinstance(existing, dict):
            _merge_into(existing, value)
        else:
            target[key] = _deep_copy_value(value)


def _deep_copy_value(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {key: _deep_copy_value(item) for key, item in value.items() if isinstance(key, str)}
    if isinstance(value, (list, tuple)):
        return [_deep_copy_value(item) for item in value]
    return copy.deepcopy(value)


def _redact_value(value: object) -> object:
    if isinstance(value, Mapping):
        return {
            key: "<redacted>" if looks_sensitive_key(key) else _redact_value(value[key])
            for key in sorted(value)
        }
    if isinstance(value, (list, tuple)):
        return [_redact_value(item) for item in value]
    return value


__all__ = [
    "BUILTIN_PROFILE_NAMES",
    "COLLABORATOR_PROVIDERS",
    "DEFAULT_CONFIG",
    "LOG_LEVELS",
    "PATH_FIELDS",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "EngineConfig",
    "ProfileOverlay",
    "apply_profile_overlay",
    "assert_valid_config",
    "default_config",
    "looks_sensitive_key",
    "merge_config",
    "migration_guidance",
    "optional_fields",
    "redact_config",
    "validate_config",
]
