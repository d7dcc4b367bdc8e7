"""
work-order-engine — RCA prompt rendering

File: src/work_order_engine/diagnostician/prompts.py
Last updated: 2026-10-18

Purpose
- Renders the root-cause-analysis prompt pair from the diagnostic context of one triage
  entry using the templates shipped in ``diagnostician/templates/``.

Functional requirements
- Rendering is strict: a variable missing from the context is an error, never an empty
  string.
- The same context renders byte-identical prompts; the template hash is reported so a
  diagnosis can be traced back to the exact template text that produced it.

Non-functional requirements
- Untrusted text (execution-log detail, QA findings) is bounded in length before it is
  interpolated.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from pathlib import Path
from typing import Final

from jinja2 import Environment, StrictUndefined, TemplateError

from work_order_engine.domain.models import (
    ExecutionLogEntry,
    Lesson,
    QAFinding,
    TriageEntry,
    WorkOrder,
    canonical_json,
    datetime_to_iso8601z,
)

TEMPLATE_ROOT: Final[Path] = Path(__file__).with_name("templates")
SYSTEM_TEMPLATE: Final[str] = "rca_system.md"
USER_TEMPLATE: Final[str] = "rca_user.md"
MIN_FIX_TASKS: Final[int] = 2
MAX_FIX_TASKS: Final[int] = 4
_MAX_DETAIL_CHARS: Final[int] = 500


class PromptRenderError(RuntimeError):
    """Raised when a template cannot be loaded or rendered."""


@dataclass(frozen=True, slots=True)
class RCAContext:
    """Everything the collaborator is shown about one triage entry."""

    triage: TriageEntry
    work_order: WorkOrder
    execution_log: tuple[ExecutionLogEntry, ...] = ()
    qa_findings: tuple[QAFinding, ...] = ()
    lessons: tuple[Lesson, ...] = ()


@dataclass(frozen=True, slots=True)
class RenderedPrompt:
    system_prompt: str
    user_prompt: str
    template_hash: str


class RCAPromptRenderer:
    """Loads the RCA templates once and renders them per triage entry."""

    def __init__(self, template_root: Path | str | None = None) -> None:
        self._root = Path(template_root) if template_root is not None else TEMPLATE_ROOT
        self._environment = Environment(
            undefined=StrictUndefined,
            autoescape=False,
            trim_blocks=False,
            lstrip_blocks=False,
            newline_sequence="\n",
            keep_trailing_newline=True,
        )
        self._system_source = self._read(SYSTEM_TEMPLATE)
        self._user_source = self._read(USER_TEMPLATE)
        digest = hashlib.sha256()
        digest.update(self._system_source.encode("utf-8"))
        digest.update(b"\0")
        digest.update(self._user_source.encode("utf-8"))
        self.template_hash = digest.hexdigest()

    def render(self, context: RCAContext) -> RenderedPrompt:
        variables = _template_variables(context)
        try:
            system_prompt = self._environment.from_string(self._system_source).render(variables)
            user_prompt = self._environment.from_string(self._user_source).render(variables)
        except TemplateError as exc:
            raise PromptRenderError(f"failed to render RCA prompt: {exc}") from exc
        return RenderedPrompt(
            system_prompt=system_prompt,
            user_prompt=user_prompt,
            template_hash=self.template_hash,
        )

    def _read(self, name: str) -> str:
        path = self._root / name
        try:
            source = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise PromptRenderError(f"unable to read prompt template {path}: {exc}") from exc
        return source.replace("\r\n", "\n").replace("\r", "\n")


def _template_variables(context: RCAContext) -> dict[str, object]:
    work_order = context.work_order
    triage = context.triage
    return {
        "triage": {
            "id": triage.id,
            "triage_type": triage.triage_type.value,
            "severity": triage.severity.value,
        },
        "triage_context": canonical_json(triage.diagnostic_context.to_dict()),
        "work_order": {
            "id": work_order.id,
            "slug": work_order.slug,
            "name": work_order.name,
            "status": work_order.status.value,
            "objective": work_order.objective,
            "acceptance_criteria": work_order.acceptance_criteria,
            "started_at": (
                datetime_to_iso8601z(work_order.started_at)
                if work_order.started_at is not None
                else None
            ),
            "updated_at": datetime_to_iso8601z(work_order.updated_at),
        },
        "execution_log": [
            {
                "created_at": datetime_to_iso8601z(entry.created_at),
                "phase": entry.phase,
                "detail": _bounded(entry.detail_text()),
            }
            for entry in context.execution_log
        ],
        "qa_findings": [
            {"category": finding.category, "description": _bounded(finding.description)}
            for finding in context.qa_findings
        ],
        "lessons": [
            {"id": lesson.id, "pattern": lesson.pattern, "rule": lesson.rule}
            for lesson in context.lessons
        ],
        "min_fix_tasks": MIN_FIX_TASKS,
        "max_fix_tasks": MAX_FIX_TASKS,
    }


def _bounded(text: str) -> str:
    flattened = " ".join(text.split())
    if len(flattened) <= _MAX_DETAIL_CHARS:
        return flattened
    return flattened[: _MAX_DETAIL_CHARS - 3] + "..."


def render_rca_prompt(
    context: RCAContext, *, renderer: RCAPromptRenderer | None = None
) -> RenderedPrompt:
    return (renderer or RCAPromptRenderer()).render(context)


__all__ = [
    "MAX_FIX_TASKS",
    "MIN_FIX_TASKS",
    "TEMPLATE_ROOT",
    "PromptRenderError",
    "RCAContext",
    "RCAPromptRenderer",
    "RenderedPrompt",
    "render_rca_prompt",
]
