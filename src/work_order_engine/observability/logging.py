"""Structured logging setup: structlog over stdlib handlers with JSON-lines output and redaction."""

from __future__ import annotations

import logging
import re
import sys
from collections.abc import Iterator, Mapping, MutableMapping
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Final, TextIO

import structlog

REDACTED_VALUE: Final[str] = "***REDACTED***"
LOG_FILENAME: Final[str] = "work_order_engine.jsonl"
ROOT_LOGGER_NAME: Final[str] = "work_order_engine"

_SENSITIVE_KEY_TOKENS: Final[frozenset[str]] = frozenset(
    {
        "secret",
        "token",
        "password",
        "passphrase",
        "apikey",
        "authorization",
        "credential",
        "credentials",
        "cookie",
    }
)
_SENSITIVE_KEY_PHRASES: Final[tuple[str, ...]] = ("api_key", "private_key", "client_secret")
# Keys whose value is a reference to a secret (an env var name), not the secret itself.
_REFERENCE_KEY_SUFFIXES: Final[tuple[str, ...]] = ("_env",)

_SENSITIVE_ASSIGNMENT_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"(?i)\b(api[_-]?key|token|password|secret|authorization)\b\s*([:=])\s*([^\s,;]+)"
)
_BEARER_TOKEN_PATTERN: Final[re.Pattern[str]] = re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/-]+=*")
_ANTHROPIC_KEY_PATTERN: Final[re.Pattern[str]] = re.compile(r"\bsk-ant-[A-Za-z0-9_-]{12,}\b")
_GENERIC_KEY_PATTERN: Final[re.Pattern[str]] = re.compile(r"\bsk-[A-Za-z0-9]{12,}\b")

_OWNED_HANDLER_ATTR: Final[str] = "_work_order_engine_owned"


def redact_event(
    logger: object, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """structlog processor masking secret-looking keys and secret-shaped substrings."""

    for key in list(event_dict):
        event_dict[key] = _redact_value(event_dict[key], key_context=key)
    return event_dict


def setup_logging(
    observability_config: Mapping[str, object] | None = None,
    *,
    log_dir: Path | str | None = None,
    stream: TextIO | None = None,
) -> logging.Logger:
    """Configure structlog and the ``work_order_engine`` stdlib logger.

    Console output goes to ``stream`` (stderr by default) so command output on stdout stays
    machine-readable. When ``log_dir`` is given, JSON lines are also appended to
    ``<log_dir>/work_order_engine.jsonl``. Calling this again replaces the previous setup.
    """

    cfg = dict(observability_config or {})
    level = _parse_log_level(cfg.get("log_level", "INFO"))
    json_logs = bool(cfg.get("json_logs", True))
    redact = bool(cfg.get("redact_secrets", True))

    shared: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]
    if redact:
        shared.append(redact_event)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *shared,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    for existing in list(logger.handlers):
        if getattr(existing, _OWNED_HANDLER_ATTR, False):
            logger.removeHandler(existing)
            existing.close()
    logger.setLevel(level)
    logger.propagate = False

    console = logging.StreamHandler(stream if stream is not None else sys.stderr)
    console.setFormatter(_formatter(shared, json_output=json_logs))
    _attach(logger, console, level)

    if log_dir is not None:
        directory = Path(log_dir)
        directory.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(directory / LOG_FILENAME, encoding="utf-8")
        file_handler.setFormatter(_formatter(shared, json_output=True))
        _attach(logger, file_handler, level)

    return logger


@contextmanager
def correlation_scope(**fields: str | None) -> Iterator[None]:
    """Bind correlation fields (run id, worker id, ...) to every log event in scope."""

    bound = {key: value for key, value in fields.items() if value is not None}
    tokens = structlog.contextvars.bind_contextvars(**bound)
    try:
        yield
    finally:
        structlog.contextvars.reset_contextvars(**tokens)


def _formatter(shared: list[Any], *, json_output: bool) -> structlog.stdlib.ProcessorFormatter:
    if json_output:
        final: list[Any] = [
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(sort_keys=True),
        ]
    else:
        final = [
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.dev.ConsoleRenderer(colors=False),
        ]
    return structlog.stdlib.ProcessorFormatter(foreign_pre_chain=shared, processors=final)


def _attach(logger: logging.Logger, handler: logging.Handler, level: int) -> None:
    handler.setLevel(level)
    setattr(handler, _OWNED_HANDLER_ATTR, True)
    logger.addHandler(handler)


def _parse_log_level(value: object) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        parsed = logging.getLevelName(value.strip().upper())
        if isinstance(parsed, int):
            return parsed
    raise ValueError(f"unsupported logging level {value!r}")


def _redact_value(value: object, *, key_context: str | None) -> object:
    if key_context is not None and _requires_redaction_for_key(key_context):
        return REDACTED_VALUE
    if isinstance(value, str):
        return _redact_string(value)
    if isinstance(value, (list, tuple)):
        return [_redact_value(item, key_context=None) for item in value]
    if isinstance(value, Mapping):
        return {key: _redact_value(item, key_context=str(key)) for key, item in value.items()}
    return value


def _requires_redaction_for_key(key: str) -> bool:
    key_lower = key.lower()
    if key_lower.endswith(_REFERENCE_KEY_SUFFIXES):
        return False
    if any(phrase in key_lower for phrase in _SENSITIVE_KEY_PHRASES):
        return True
    return any(part in _SENSITIVE_KEY_TOKENS for part in re.split(r"[^a-z0-9]+", key_lower))


def _redact_string(text: str) -> str:
    redacted = _SENSITIVE_ASSIGNMENT_PATTERN.sub(
        lambda match: f"{match.group(1)}{match.group(2)}{REDACTED_VALUE}", text
    )
    redacted = _BEARER_TOKEN_PATTERN.sub(f"Bearer {REDACTED_VALUE}", redacted)
    redacted = _ANTHROPIC_KEY_PATTERN.sub(REDACTED_VALUE, redacted)
    return _GENERIC_KEY_PATTERN.sub(REDACTED_VALUE, redacted)


__all__ = [
    "LOG_FILENAME",
    "REDACTED_VALUE",
    "ROOT_LOGGER_NAME",
    "correlation_scope",
    "redact_event",
    "setup_logging",
]
