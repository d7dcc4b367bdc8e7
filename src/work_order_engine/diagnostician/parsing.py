"""Turn untrusted collaborator text into a ``Diagnosis``.

``parse_diagnosis`` never raises on content: anything it cannot use becomes the
low-confidence fallback diagnosis with the raw text preserved as the root cause.
"""

from __future__ import annotations

import json
import math
import re
from collections.abc import Mapping
from typing import Final

import structlog

from work_order_engine.diagnostician.prompts import MAX_FIX_TASKS
from work_order_engine.domain.models import Diagnosis, FixTask

FALLBACK_ROOT_CAUSE_CHARS: Final[int] = 500
FALLBACK_CONFIDENCE: Final[float] = 0.5
FALLBACK_FACTOR: Final[str] = "Parse error - see root_cause for raw output"
FALLBACK_FIX: Final[str] = "Manual review required"

_FENCE_RE: Final[re.Pattern[str]] = re.compile(r"```[A-Za-z0-9_-]*[ \t]*\n?(.*?)```", re.DOTALL)
_FIX_TASK_FIELDS: Final[frozenset[str]] = frozenset(
    {"name", "objective", "acceptance_criteria", "tags"}
)

logger = structlog.get_logger(__name__)


class DiagnosisFormatError(ValueError):
    """Raised by ``parse_diagnosis_strict`` when the response does not match the schema."""


def strip_code_fences(text: str) -> str:
    """Return the body of the first fenced block, or ``text`` unchanged when there is none."""

    match = _FENCE_RE.search(text)
    if match is None:
        return text.strip()
    return match.group(1).strip()


def extract_first_json_object(text: str) -> dict[str, object] | None:
    decoder = json.JSONDecoder()
    index = text.find("{")
    while index != -1:
        try:
            value, _ = decoder.raw_decode(text, index)
        except json.JSONDecodeError:
            index = text.find("{", index + 1)
            continue
        if isinstance(value, dict):
            return value
        index = text.find("{", index + 1)
    return None


def parse_diagnosis_strict(text: str) -> Diagnosis:
    if not isinstance(text, str):
        raise DiagnosisFormatError("response must be a string")
    payload = extract_first_json_object(strip_code_fences(text))
    if payload is None:
        payload = extract_first_json_object(text)
    if payload is None:
        raise DiagnosisFormatError("response does not contain a JSON object")

    root_cause = _required_text(payload, "root_cause")
    recommended_fix = _required_text(payload, "recommended_fix")
    factors = payload.get("contributing_factors", [])
    if isinstance(factors, str):
        factors = [factors]
    if not isinstance(factors, list):
        raise DiagnosisFormatError("contributing_factors must be an array of strings")
    contributing = tuple(
        item.strip() for item in factors if isinstance(item, str) and item.strip()
    )

    return Diagnosis(
        root_cause=root_cause,
        contributing_factors=contributing,
        recommended_fix=recommended_fix,
        confidence=_clamped_confidence(payload.get("confidence")),
        fix_tasks=_fix_tasks(payload.get("fix_tasks", [])),
    )


def parse_diagnosis(text: str) -> Diagnosis:
    try:
        return parse_diagnosis_strict(text)
    except ValueError as exc:
        # DiagnosisFormatError and model validation errors alike.
        logger.warning("diagnosis_parse_fallback", error=str(exc))
        return fallback_diagnosis(text)


def fallback_diagnosis(raw: object) -> Diagnosis:
    text = raw if isinstance(raw, str) else repr(raw)
    root_cause = text[:FALLBACK_ROOT_CAUSE_CHARS].strip() or "Empty collaborator response"
    return Diagnosis(
        root_cause=root_cause,
        contributing_factors=(FALLBACK_FACTOR,),
        recommended_fix=FALLBACK_FIX,
        confidence=FALLBACK_CONFIDENCE,
        fix_tasks=(),
        parse_fallback=True,
    )


def _required_text(payload: Mapping[str, object], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value.strip():
        raise DiagnosisFormatError(f"{key} must be a non-empty string")
    return value.strip()


def _clamped_confidence(value: object) -> float:
    if value is None:
        return FALLBACK_CONFIDENCE
    if isinstance(value, bool):
        raise DiagnosisFormatError("confidence must be a number")
    if isinstance(value, str):
        try:
            value = float(value)
        except ValueError as exc:
            raise DiagnosisFormatError("confidence must be a number") from exc
    if not isinstance(value, (int, float)) or not math.isfinite(value):
        raise DiagnosisFormatError("confidence must be a finite number")
    return min(max(float(value), 0.0), 1.0)


def _fix_tasks(value: object) -> tuple[FixTask, ...]:
    if not isinstance(value, list):
        raise DiagnosisFormatError("fix_tasks must be an array")
    tasks: list[FixTask] = []
    for index, item in enumerate(value):
        if len(tasks) >= MAX_FIX_TASKS:
            break
        if not isinstance(item, Mapping):
            logger.warning("fix_task_skipped", index=index, error="not an object")
            continue
        known = {key: item[key] for key in item if key in _FIX_TASK_FIELDS}
        try:
            tasks.append(FixTask.from_dict(known))
        except (TypeError, ValueError) as exc:
            logger.warning("fix_task_skipped", index=index, error=str(exc))
    return tuple(tasks)


__all__ = [
    "FALLBACK_CONFIDENCE",
    "DiagnosisFormatError",
    "extract_first_json_object",
    "fallback_diagnosis",
    "parse_diagnosis",
    "parse_diagnosis_strict",
    "strip_code_fences",
]
