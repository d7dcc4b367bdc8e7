"""
work-order-engine config package public API.

File: src/work_order_engine/config/__init__.py
Last updated: 2026-10-18

Purpose
- Export config loading/validation entrypoints and public error types.

Functional requirements
- Support loading from ``work_order_engine.toml`` + ``WOE_`` env overrides.
- Fail fast with clear structured validation/load errors.
"""

from work_order_engine.config.loader import (
    DEFAULT_CONFIG_FILE,
    ENV_PREFIX,
    ConfigLoadError,
    dump_effective_config,
    env_name_for_path,
    load_config,
    normalize_paths,
)
from work_order_engine.config.schema import (
    BUILTIN_PROFILE_NAMES,
    DEFAULT_CONFIG,
    PATH_FIELDS,
    ConfigSchemaVersion,
    ConfigValidationError,
    ConfigValidationIssue,
    ConfigValidationResult,
    EngineConfig,
    ProfileOverlay,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    merge_config,
    migration_guidance,
    redact_config,
    validate_config,
)

__all__ = [
    "BUILTIN_PROFILE_NAMES",
    "DEFAULT_CONFIG",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "PATH_FIELDS",
    "ConfigLoadError",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "EngineConfig",
    "ProfileOverlay",
    "apply_profile_overlay",
    "assert_valid_config",
    "default_config",
    "dump_effective_config",
    "env_name_for_path",
    "load_config",
    "merge_config",
    "migration_guidance",
    "normalize_paths",
    "redact_config",
    "validate_config",
]
