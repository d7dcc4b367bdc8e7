"""
work-order-engine — unit tests for config schema validation

File: tests/unit/config/test_schema.py
Last updated: 2026-10-18

Purpose
- Validate strict schema checks, structured issue paths, profile overlays, and redaction.

What this test file should cover
- Shipped ``work_order_engine.toml`` validates.
- Unknown keys, wrong types, and range violations report exact paths.
- Embedded secrets are rejected while ``*_env`` references are allowed.
- Profile overlays deep-merge and re-validate.

Functional requirements
- Deterministic and fast.
"""

from __future__ import annotations

import tomllib
from collections.abc import Mapping
from pathlib import Path

import pytest

from work_order_engine.config.schema import (
    DEFAULT_CONFIG,
    ConfigSchemaVersion,
    ConfigValidationError,
    apply_profile_overlay,
    default_config,
    looks_sensitive_key,
    merge_config,
    redact_config,
    validate_config,
)

REPO_ROOT = Path(__file__).resolve().parents[3]


def _load_toml(path: Path) -> dict[str, object]:
    with path.open("rb") as handle:
        data = tomllib.load(handle)
    assert isinstance(data, dict)
    return data


def _as_object_dict(value: object) -> dict[str, object]:
    assert isinstance(value, Mapping)
    normalized: dict[str, object] = {}
    for key, item in value.items():
        assert isinstance(key, str)
        normalized[key] = item
    return normalized


def _issues(config: Mapping[str, object]) -> dict[str, str]:
    result = validate_config(config)
    assert not result.is_valid
    return {issue.path: issue.message for issue in result.issues}


def test_repo_config_validates_successfully() -> None:
    config = _load_toml(REPO_ROOT / "work_order_engine.toml")

    result = validate_config(config)

    assert result.is_valid
    assert result.config is not None
    assert result.config["meta"]["schema_version"] == ConfigSchemaVersion
    assert set(result.config["profiles"]) == {"aggressive", "offline"}


def test_defaults_validate_and_are_copied() -> None:
    first = default_config()
    first["monitor"]["stuck_after_minutes"] = 1

    assert validate_config(default_config()).is_valid
    assert DEFAULT_CONFIG["monitor"]["stuck_after_minutes"] == 30


def test_unknown_key_rejection_is_explicit() -> None:
    config = _load_toml(REPO_ROOT / "work_order_engine.toml")
    monitor = _as_object_dict(config["monitor"])
    monitor["panic_threshold"] = 2
    config["monitor"] = monitor
    config["extras"] = {}

    issues = _issues(config)

    assert issues["monitor.panic_threshold"] == "unknown field"
    assert issues["extras"] == "unknown field"


def test_missing_section_and_field_are_reported() -> None:
    config = default_config()
    del config["task_queue"]  # type: ignore[misc]
    del config["monitor"]["orphan_after_minutes"]  # type: ignore[misc]

    issues = _issues(config)

    assert issues["task_queue"] == "missing required field"
    assert issues["monitor.orphan_after_minutes"] == "missing required field"


@pytest.mark.parametrize(
    ("section", "key", "value", "fragment"),
    [
        ("monitor", "stuck_after_minutes", "thirty", "expected integer"),
        ("monitor", "stuck_after_minutes", True, "expected integer"),
        ("monitor", "spiral_read_ratio", 1.5, "must be <= 1"),
        ("diagnostician", "batch_size", 0, "must be >= 1"),
        ("diagnostician", "temperature", float("nan"), "must be finite"),
        ("observability", "json_logs", "yes", "expected boolean"),
        ("observability", "log_level", "TRACE", "expected one of: DEBUG, ERROR, INFO, WARNING"),
        ("collaborator", "api_key_env", "anthropic-key", "must be an env var name"),
        ("collaborator", "model", "  ", "must not be empty"),
    ],
)
def test_field_violations_report_exact_path(
    section: str, key: str, value: object, fragment: str
) -> None:
    config = _load_toml(REPO_ROOT / "work_order_engine.toml")
    payload = _as_object_dict(config[section])
    payload[key] = value
    config[section] = payload

    issues = _issues(config)

    assert fragment in issues[f"{section}.{key}"]


def test_schema_version_mismatch_gives_migration_guidance() -> None:
    config = default_config()
    config["meta"]["schema_version"] = ConfigSchemaVersion + 1

    issues = _issues(config)

    assert "upgrade the work-order-engine runtime" in issues["meta.schema_version"]


def test_embedded_secret_is_rejected_but_api_key_env_is_allowed() -> None:
    config = _load_toml(REPO_ROOT / "work_order_engine.toml")
    collaborator = _as_object_dict(config["collaborator"])
    collaborator["api_key"] = "sk-THISISFAKE123456789012"
    config["collaborator"] = collaborator

    issues = _issues(config)

    assert "embedded secret values are forbidden" in issues["collaborator.api_key"]
    assert "collaborator.api_key_env" not in issues


@pytest.mark.parametrize(
    ("key", "expected"),
    [
        ("api_key", True),
        ("apiKey", True),
        ("client_secret", True),
        ("session_token", True),
        ("api_key_env", False),
        ("max_tokens", False),
        ("model", False),
    ],
)
def test_looks_sensitive_key(key: str, expected: bool) -> None:
    assert looks_sensitive_key(key) is expected


def test_profile_validation_reports_bad_names_and_sections() -> None:
    config = default_config()
    config["profiles"] = {
        "Bad Name": {},
        "nightly": {"meta": {"schema_version": 1}, "monitor": {"spiral_min_turns": 0}},
    }

    issues = _issues(config)

    assert "profile name must match" in issues["profiles.Bad Name"]
    assert issues["profiles.nightly.meta"] == "unknown field"
    assert issues["profiles.nightly.monitor.spiral_min_turns"] == "must be >= 1"


def test_profile_overlay_deep_merges_known_sections_and_revalidates() -> None:
    config = _load_toml(REPO_ROOT / "work_order_engine.toml")

    merged = apply_profile_overlay(config, "aggressive")

    assert merged["monitor"]["stuck_after_minutes"] == 15
    assert merged["monitor"]["orphan_after_minutes"] == 5
    assert merged["monitor"]["spiral_min_turns"] == 10
    assert merged["diagnostician"]["batch_size"] == 10
    assert apply_profile_overlay(config, None) == config


def test_profile_overlay_rejects_unknown_profile() -> None:
    with pytest.raises(ConfigValidationError, match="profile 'nope' is not defined"):
        apply_profile_overlay(default_config(), "nope")


def test_merge_config_does_not_mutate_inputs() -> None:
    base = {"monitor": {"stuck_after_minutes": 30, "orphan_after_minutes": 10}}
    overlay = {"monitor": {"stuck_after_minutes": 5}}

    merged = merge_config(base, overlay)

    assert merged == {"monitor": {"stuck_after_minutes": 5, "orphan_after_minutes": 10}}
    assert base["monitor"]["stuck_after_minutes"] == 30


def test_redaction_is_recursive_and_preserves_shape() -> None:
    merged = merge_config(
        default_config(),
        {"collaborator": {"nested": {"password": "hunter2", "safe": "value"}}},
    )

    redacted = redact_config(merged)

    assert redacted["collaborator"]["api_key_env"] == "ANTHROPIC_API_KEY"
    assert redacted["collaborator"]["nested"]["password"] == "<redacted>"
    assert redacted["collaborator"]["nested"]["safe"] == "value"
    assert redact_config("not a mapping") == {}
