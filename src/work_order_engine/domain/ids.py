"""Canonical ID and slug generation/validation for engine entities."""

from __future__ import annotations

import re
import secrets
import time
from collections.abc import Callable
from typing import Final

from work_order_engine.constants import SLUG_PREFIX, SLUG_WIDTH

CROCKFORD_BASE32_ALPHABET: Final[str] = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
ULID_LENGTH: Final[int] = 26
ULID_RANDOM_BYTES: Final[int] = 10
ULID_MAX_TIMESTAMP_MS: Final[int] = (1 << 48) - 1
_PREFIX_SEPARATOR: Final[str] = "-"

# Stable entity ID prefixes.
WORK_ORDER_ID_PREFIX: Final[str] = "wo"
TRIAGE_ID_PREFIX: Final[str] = "tri"
AUDIT_ID_PREFIX: Final[str] = "aud"
EXEC_LOG_ID_PREFIX: Final[str] = "log"
QA_FINDING_ID_PREFIX: Final[str] = "qa"
LESSON_ID_PREFIX: Final[str] = "les"
TASK_ID_PREFIX: Final[str] = "tsk"
CORRELATION_ID_PREFIX: Final[str] = "cor"

SLUG_PATTERN_DESCRIPTION: Final[str] = "WO-0001"
_SLUG_RE: Final[re.Pattern[str]] = re.compile(rf"^{re.escape(SLUG_PREFIX)}(\d{{{SLUG_WIDTH},}})$")

_DECODE_TABLE: Final[dict[str, int]] = {
    char: index for index, char in enumerate(CROCKFORD_BASE32_ALPHABET)
}

_RandBytes = Callable[[int], bytes]

__all__ = [
    "AUDIT_ID_PREFIX",
    "CORRELATION_ID_PREFIX",
    "CROCKFORD_BASE32_ALPHABET",
    "EXEC_LOG_ID_PREFIX",
    "LESSON_ID_PREFIX",
    "QA_FINDING_ID_PREFIX",
    "SLUG_PATTERN_DESCRIPTION",
    "TASK_ID_PREFIX",
    "TRIAGE_ID_PREFIX",
    "ULID_LENGTH",
    "WORK_ORDER_ID_PREFIX",
    "format_slug",
    "generate_audit_id",
    "generate_correlation_id",
    "generate_exec_log_id",
    "generate_lesson_id",
    "generate_prefixed_id",
    "generate_qa_finding_id",
    "generate_task_id",
    "generate_triage_id",
    "generate_ulid",
    "generate_work_order_id",
    "parse_slug_number",
    "short_id",
    "validate_prefixed_id",
    "validate_slug",
    "validate_triage_id",
    "validate_ulid",
    "validate_work_order_id",
]


def generate_ulid(
    *,
    timestamp_ms: int | None = None,
    randbytes: _RandBytes | None = None,
) -> str:
    """Generate a ULID as a 26-character uppercase Crockford Base32 string."""
    ts_ms = time.time_ns() // 1_000_000 if timestamp_ms is None else timestamp_ms
    if not isinstance(ts_ms, int) or not 0 <= ts_ms <= ULID_MAX_TIMESTAMP_MS:
        raise ValueError(f"timestamp_ms out of range: expected 0..{ULID_MAX_TIMESTAMP_MS}")
    provider = secrets.token_bytes if randbytes is None else randbytes
    random_bytes = bytes(provider(ULID_RANDOM_BYTES))
    if len(random_bytes) != ULID_RANDOM_BYTES:
        raise ValueError(f"randbytes must return exactly {ULID_RANDOM_BYTES} bytes")
    value = (ts_ms << 80) | int.from_bytes(random_bytes, "big")

    chars = ["0"] * ULID_LENGTH
    for index in range(ULID_LENGTH - 1, -1, -1):
        chars[index] = CROCKFORD_BASE32_ALPHABET[value & 0b11111]
        value >>= 5
    return "".join(chars)


def validate_ulid(s: str) -> None:
    """Validate a ULID and raise ``ValueError`` with precise context on failure."""
    if not isinstance(s, str):
        raise ValueError(f"ulid must be a string, got {type(s).__name__}")
    if len(s) != ULID_LENGTH:
        raise ValueError(f"ulid length must be {ULID_LENGTH}, got {len(s)}")
    if s[0].upper() not in "01234567":
        raise ValueError("ulid overflow: value exceeds maximum 128-bit ULID")
    for index, char in enumerate(s):
        if char.upper() not in _DECODE_TABLE:
            raise ValueError(f"invalid ULID character {char!r} at index {index}")


def generate_prefixed_id(
    prefix: str,
    *,
    timestamp_ms: int | None = None,
    randbytes: _RandBytes | None = None,
) -> str:
    """Generate a stable prefixed ID in the form ``<prefix>-<ulid>``."""
    _validate_prefix(prefix)
    ulid = generate_ulid(timestamp_ms=timestamp_ms, randbytes=randbytes)
    return f"{prefix}{_PREFIX_SEPARATOR}{ulid}"


def validate_prefixed_id(id_str: str, expected_prefix: str) -> None:
    """Validate ``<prefix>-<ulid>`` format and enforce ``expected_prefix``."""
    _validate_prefix(expected_prefix)
    if not isinstance(id_str, str):
        raise ValueError(f"prefixed id must be a string, got {type(id_str).__name__}")

    expected_lead = f"{expected_prefix}{_PREFIX_SEPARATOR}"
    if not id_str.startswith(expected_lead):
        raise ValueError(f"expected prefix '{expected_lead}'")

    try:
        validate_ulid(id_str[len(expected_lead) :])
    except ValueError as exc:
        raise ValueError(f"invalid ULID part for prefix '{expected_prefix}': {exc}") from exc


def short_id(id_str: str) -> str:
    """Return the last 8 characters of an ID for compact display."""
    if not isinstance(id_str, str):
        raise ValueError(f"id must be a string, got {type(id_str).__name__}")
    if len(id_str) < 8:
        raise ValueError("id must be at least 8 characters")
    return id_str[-8:]


def generate_work_order_id(*, timestamp_ms: int | None = None) -> str:
    return generate_prefixed_id(WORK_ORDER_ID_PREFIX, timestamp_ms=timestamp_ms)


def validate_work_order_id(id_str: str) -> None:
    validate_prefixed_id(id_str, WORK_ORDER_ID_PREFIX)


def generate_triage_id(*, timestamp_ms: int | None = None) -> str:
    return generate_prefixed_id(TRIAGE_ID_PREFIX, timestamp_ms=timestamp_ms)


def validate_triage_id(id_str: str) -> None:
    validate_prefixed_id(id_str, TRIAGE_ID_PREFIX)


def generate_audit_id(*, timestamp_ms: int | None = None) -> str:
    return generate_prefixed_id(AUDIT_ID_PREFIX, timestamp_ms=timestamp_ms)


def generate_exec_log_id(*, timestamp_ms: int | None = None) -> str:
    return generate_prefixed_id(EXEC_LOG_ID_PREFIX, timestamp_ms=timestamp_ms)


def generate_qa_finding_id(*, timestamp_ms: int | None = None) -> str:
    return generate_prefixed_id(QA_FINDING_ID_PREFIX, timestamp_ms=timestamp_ms)


def generate_lesson_id(*, timestamp_ms: int | None = None) -> str:
    return generate_prefixed_id(LESSON_ID_PREFIX, timestamp_ms=timestamp_ms)


def generate_task_id(*, timestamp_ms: int | None = None) -> str:
    return generate_prefixed_id(TASK_ID_PREFIX, timestamp_ms=timestamp_ms)


def generate_correlation_id(*, timestamp_ms: int | None = None) -> str:
    return generate_prefixed_id(CORRELATION_ID_PREFIX, timestamp_ms=timestamp_ms)


def format_slug(number: int) -> str:
    """Render the human-readable slug for sequence ``number`` (``WO-0001``)."""
    if isinstance(number, bool) or not isinstance(number, int) or number < 1:
        raise ValueError(f"slug number must be a positive integer, got {number!r}")
    return f"{SLUG_PREFIX}{number:0{SLUG_WIDTH}d}"


def validate_slug(slug: str) -> None:
    """Validate work order slugs of the form ``WO-0001``."""
    parse_slug_number(slug)


def parse_slug_number(slug: str) -> int:
    if not isinstance(slug, str):
        raise ValueError(f"slug must be a string, got {type(slug).__name__}")
    match = _SLUG_RE.fullmatch(slug)
    if match is None:
        raise ValueError(f"slug must match {SLUG_PATTERN_DESCRIPTION} (got {slug!r})")
    number = int(match.group(1))
    if number <= 0:
        raise ValueError("slug sequence must start at 0001")
    return number


def _validate_prefix(prefix: str) -> None:
    if not isinstance(prefix, str):
        raise ValueError(f"prefix must be a string, got {type(prefix).__name__}")
    if not prefix:
        raise ValueError("prefix must be non-empty")
    if _PREFIX_SEPARATOR in prefix:
        raise ValueError(f"prefix must not contain '{_PREFIX_SEPARATOR}'")
