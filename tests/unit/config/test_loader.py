"""
work-order-engine — unit tests for config loader

File: tests/unit/config/test_loader.py
Last updated: 2026-10-18

Purpose
- Validate deterministic config loading from defaults, TOML, env overrides, and CLI overrides.

What this test file should cover
- Precedence: CLI > env > file > defaults.
- Deterministic env var path mapping and type coercion.
- Profile selection by argument, CLI override, and ``WOE_PROFILE``.
- Path normalization relative to the config file.
- Redacted effective config dumping.

Functional requirements
- Works without provider keys or network.
"""

from __future__ import annotations

import hashlib
import json
from pathlib import Path

import pytest

from work_order_engine.config.loader import (
    ConfigLoadError,
    dump_effective_config,
    env_name_for_path,
    load_config,
)
from work_order_engine.config.schema import ConfigValidationError

REPO_ROOT = Path(__file__).resolve().parents[3]


def _write_config(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")


def _sha256_json(data: dict[str, object]) -> str:
    payload = json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def test_loader_precedence_default_file_env_cli(tmp_path: Path) -> None:
    config_path = tmp_path / "work_order_engine.toml"
    default_path = tmp_path / "default.toml"
    _write_config(default_path, "")
    _write_config(
        config_path,
        """
[monitor]
stuck_after_minutes = 45
""".strip(),
    )
    env = {"WOE_MONITOR__STUCK_AFTER_MINUTES": "50"}

    default_loaded = load_config(default_path, environ={})
    file_loaded = load_config(config_path, environ={})
    env_loaded = load_config(config_path, environ=env)
    cli_loaded = load_config(
        config_path, environ=env, cli_overrides={"monitor.stuck_after_minutes": 55}
    )

    assert default_loaded["monitor"]["stuck_after_minutes"] == 30
    assert file_loaded["monitor"]["stuck_after_minutes"] == 45
    assert env_loaded["monitor"]["stuck_after_minutes"] == 50
    assert cli_loaded["monitor"]["stuck_after_minutes"] == 55


def test_env_values_are_coerced_by_default_type(tmp_path: Path) -> None:
    config_path = tmp_path / "work_order_engine.toml"
    _write_config(config_path, "")

    loaded = load_config(
        config_path,
        environ={
            "WOE_OBSERVABILITY__JSON_LOGS": "off",
            "WOE_MONITOR__SPIRAL_READ_RATIO": "0.75",
            "WOE_DIAGNOSTICIAN__BATCH_SIZE": " 8 ",
            "WOE_COLLABORATOR__MODEL": "claude-pinned",
        },
    )

    assert loaded["observability"]["json_logs"] is False
    assert loaded["monitor"]["spiral_read_ratio"] == pytest.approx(0.75)
    assert loaded["diagnostician"]["batch_size"] == 8
    assert loaded["collaborator"]["model"] == "claude-pinned"


@pytest.mark.parametrize(
    ("env_name", "raw", "fragment"),
    [
        ("WOE_MONITOR__STUCK_AFTER_MINUTES", "soon", "must be an integer"),
        ("WOE_MONITOR__SPIRAL_READ_RATIO", "half", "must be a number"),
        ("WOE_OBSERVABILITY__REDACT_SECRETS", "maybe", "must be a boolean"),
    ],
)
def test_invalid_env_coercion_raises_actionable_error(
    tmp_path: Path, env_name: str, raw: str, fragment: str
) -> None:
    config_path = tmp_path / "work_order_engine.toml"
    _write_config(config_path, "")

    with pytest.raises(ConfigLoadError, match=fragment) as excinfo:
        load_config(config_path, environ={env_name: raw})

    assert env_name in str(excinfo.value)


def test_env_override_outside_bounds_fails_validation(tmp_path: Path) -> None:
    config_path = tmp_path / "work_order_engine.toml"
    _write_config(config_path, "")

    with pytest.raises(ConfigValidationError, match="diagnostician.batch_size"):
        load_config(config_path, environ={"WOE_DIAGNOSTICIAN__BATCH_SIZE": "0"})


def test_loader_is_deterministic_for_same_inputs(tmp_path: Path) -> None:
    config_path = tmp_path / "work_order_engine.toml"
    _write_config(config_path, "")
    env = {"WOE_MONITOR__ORPHAN_AFTER_MINUTES": "20", "WOE_PROFILE": "offline"}
    cli = {"task_queue.max_attempts": 3}

    first = load_config(config_path, environ=env, cli_overrides=cli)
    second = load_config(config_path, environ=env, cli_overrides=cli)

    assert _sha256_json(first) == _sha256_json(second)


def test_path_normalization_is_relative_to_config_file(tmp_path: Path) -> None:
    config_path = tmp_path / "nested" / "work_order_engine.toml"
    _write_config(
        config_path,
        """
[paths]
state_db = "data/engine.sqlite3"
""".strip(),
    )

    loaded = load_config(config_path, environ={"WOE_PATHS__LOG_DIR": "logs"})

    assert loaded["paths"]["state_db"] == (config_path.parent / "data/engine.sqlite3").as_posix()
    assert loaded["paths"]["log_dir"] == (config_path.parent / "logs").as_posix()


def test_absolute_paths_are_kept(tmp_path: Path) -> None:
    config_path = tmp_path / "work_order_engine.toml"
    target = (tmp_path / "elsewhere" / "db.sqlite3").as_posix()
    _write_config(config_path, f'[paths]\nstate_db = "{target}"\n')

    loaded = load_config(config_path, environ={})

    assert loaded["paths"]["state_db"] == target


def test_profile_selection_precedence(tmp_path: Path) -> None:
    config_path = tmp_path / "work_order_engine.toml"
    _write_config(
        config_path,
        """
[profiles.fast]
monitor = { stuck_after_minutes = 5 }
""".strip(),
    )

    from_env = load_config(config_path, environ={"WOE_PROFILE": "offline"})
    from_cli = load_config(
        config_path, environ={"WOE_PROFILE": "offline"}, cli_overrides={"profile": "fast"}
    )
    from_argument = load_config(
        config_path,
        profile="offline",
        environ={"WOE_PROFILE": "fast"},
    )

    assert from_env["collaborator"]["provider"] == "static"
    assert from_env["observability"]["json_logs"] is False
    assert from_cli["monitor"]["stuck_after_minutes"] == 5
    assert from_cli["collaborator"]["provider"] == "anthropic"
    assert from_argument["collaborator"]["provider"] == "static"
    assert from_argument["monitor"]["stuck_after_minutes"] == 30


def test_env_overrides_win_over_profile(tmp_path: Path) -> None:
    config_path = tmp_path / "work_order_engine.toml"
    _write_config(config_path, "")

    loaded = load_config(
        config_path,
        profile="offline",
        environ={"WOE_COLLABORATOR__PROVIDER": "anthropic"},
    )

    assert loaded["collaborator"]["provider"] == "anthropic"
    assert loaded["observability"]["json_logs"] is False


def test_unknown_profile_is_rejected(tmp_path: Path) -> None:
    config_path = tmp_path / "work_order_engine.toml"
    _write_config(config_path, "")

    with pytest.raises(ConfigValidationError, match="profile 'nightly' is not defined"):
        load_config(config_path, profile="nightly", environ={})


def test_missing_explicit_file_and_bad_toml_raise_load_errors(tmp_path: Path) -> None:
    broken = tmp_path / "broken.toml"
    _write_config(broken, "[monitor\nstuck_after_minutes = 1")

    with pytest.raises(ConfigLoadError, match="config file not found"):
        load_config(tmp_path / "missing.toml", environ={})
    with pytest.raises(ConfigLoadError, match="invalid TOML"):
        load_config(broken, environ={})


def test_invalid_file_value_fails_validation(tmp_path: Path) -> None:
    config_path = tmp_path / "work_order_engine.toml"
    _write_config(config_path, '[collaborator]\nprovider = "openai"\n')

    with pytest.raises(ConfigValidationError) as excinfo:
        load_config(config_path, environ={})

    assert [issue.path for issue in excinfo.value.issues] == ["collaborator.provider"]


def test_dump_effective_config_is_redacted_and_deterministic(tmp_path: Path) -> None:
    config_path = tmp_path / "work_order_engine.toml"
    _write_config(config_path, "")

    loaded = load_config(config_path, environ={})
    loaded["collaborator"]["session_token"] = "tok-secret"
    first = dump_effective_config(loaded)
    second = dump_effective_config(loaded)

    assert first == second
    parsed = json.loads(first)
    assert parsed["collaborator"]["api_key_env"] == "ANTHROPIC_API_KEY"
    assert parsed["collaborator"]["session_token"] == "<redacted>"
    assert "tok-secret" not in first


def test_can_load_repo_config_with_profile_and_env_override() -> None:
    loaded = load_config(
        REPO_ROOT / "work_order_engine.toml",
        profile="aggressive",
        environ={"WOE_DIAGNOSTICIAN__BATCH_SIZE": "7"},
    )

    assert loaded["monitor"]["stuck_after_minutes"] == 15
    assert loaded["diagnostician"]["batch_size"] == 7
    assert loaded["paths"]["state_db"] == (REPO_ROOT / "state/work_orders.sqlite3").as_posix()


def test_env_name_for_path() -> None:
    assert env_name_for_path(("monitor", "stuck_after_minutes")) == (
        "WOE_MONITOR__STUCK_AFTER_MINUTES"
    )


def test_config_package_exports_loader_and_errors(tmp_path: Path) -> None:
    import work_order_engine.config as config_pkg

    config_path = tmp_path / "work_order_engine.toml"
    _write_config(config_path, "")

    loaded = config_pkg.load_config(config_path, environ={})
    assert loaded["meta"]["schema_version"] == 1

    with pytest.raises(config_pkg.ConfigLoadError):
        config_pkg.load_config(tmp_path / "missing.toml")
