"""
work-order-engine — Tier-2 diagnostician engine

File: src/work_order_engine/diagnostician/engine.py
Last updated: 2026-10-18

Purpose
- Claims escalated triage entries, asks the reasoning collaborator for a root-cause
  analysis, and turns each diagnosis into a parent remediation work order with one child
  per fix task.

Functional requirements
- Claims are atomic across processes and bounded to ``batch_size`` entries per run.
- Each entry is processed in isolation: a failure is recorded on that entry, its claim
  is released, and the rest of the batch still runs.
- The collaborator call is bounded by ``collaborator_timeout_seconds``.
- Unparseable collaborator output still yields a (low-confidence) parent work order.

Non-functional requirements
- Every work order created here is attributed to the diagnostician in the audit trail.
"""

from __future__ import annotations

import asyncio
import os
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Final

import structlog

from work_order_engine.collaborators.base import (
    CollaboratorTimeoutError,
    ReasoningCollaborator,
    ReasoningRequest,
)
from work_order_engine.constants import DIAGNOSTICIAN_ACTOR, ESCALATE_TO_DIAGNOSTICIAN
from work_order_engine.diagnostician.parsing import parse_diagnosis
from work_order_engine.diagnostician.prompts import RCAContext, RCAPromptRenderer
from work_order_engine.domain import ids
from work_order_engine.domain.models import (
    AuditRecord,
    Diagnosis,
    JSONValue,
    Priority,
    Severity,
    TaskMessage,
    TriageEntry,
    TriageType,
    WorkOrder,
    utc_now,
)
from work_order_engine.lifecycle.transitions import TransitionError
from work_order_engine.persistence.repositories import (
    AuditRepo,
    ExecutionLogRepo,
    LessonRepo,
    QAFindingRepo,
    TriageRepo,
    WorkOrderRepo,
)

if TYPE_CHECKING:
    from work_order_engine.lifecycle.transitions import TransitionGateway
    from work_order_engine.persistence.state_db import StateDB

DIAGNOSTICIAN_SOURCE: Final[str] = "diagnostician"
DIAGNOSIS_AUDIT_EVENT: Final[str] = "diagnosis_recorded"
PARENT_TAGS: Final[tuple[str, ...]] = ("diagnostician-root-cause", "auto-generated")
CHILD_TAG: Final[str] = "diagnostician-child"
PARENT_ACCEPTANCE_CRITERIA: Final[str] = (
    "1. Complete all child fix tasks\n"
    "2. Verify original WO issue is resolved\n"
    "3. Update lessons with new insights"
)
LESSON_CATEGORIES: Final[Mapping[TriageType, tuple[str, ...]]] = {
    TriageType.STUCK: ("execution", "scope_creep", "context_loss"),
    TriageType.SPIRAL: ("tool_misuse", "scope_creep", "execution"),
    TriageType.MISMATCH: ("state_machine", "execution"),
    TriageType.ORPHAN: ("execution",),
    TriageType.AUTO_UNBLOCK: ("execution",),
}
DEFAULT_LESSON_CATEGORIES: Final[tuple[str, ...]] = ("general",)


def lesson_categories(triage_type: TriageType | str) -> tuple[str, ...]:
    try:
        return LESSON_CATEGORIES[TriageType(triage_type)]
    except (KeyError, ValueError):
        return DEFAULT_LESSON_CATEGORIES


@dataclass(frozen=True, slots=True)
class DiagnosticianSettings:
    batch_size: int = 5
    exec_log_tail: int = 20
    lesson_limit: int = 10
    claim_lease_seconds: int = 900
    max_tokens: int = 4000
    temperature: float = 0.3
    collaborator_timeout_seconds: float = 120.0
    model: str | None = None

    def __post_init__(self) -> None:
        for name in ("batch_size", "exec_log_tail", "lesson_limit", "claim_lease_seconds"):
            if getattr(self, name) < 1:
                raise ValueError(f"DiagnosticianSettings.{name} must be >= 1")
        if self.max_tokens < 1:
            raise ValueError("DiagnosticianSettings.max_tokens must be >= 1")
        if not 0.0 <= self.temperature <= 2.0:
            raise ValueError("DiagnosticianSettings.temperature must be within [0, 2]")
        if self.collaborator_timeout_seconds <= 0:
            raise ValueError("DiagnosticianSettings.collaborator_timeout_seconds must be > 0")

    @classmethod
    def from_mapping(cls, values: Mapping[str, object]) -> DiagnosticianSettings:
        known = set(cls.__dataclass_fields__)
        selected = {key: value for key, value in values.items() if key in known}
        return cls(**selected)  # type: ignore[arg-type]


@dataclass(frozen=True, slots=True)
class ItemOutcome:
    triage_id: str
    work_order_id: str
    success: bool
    parent_slug: str | None = None
    child_count: int = 0
    confidence: float | None = None
    parse_fallback: bool = False
    error: str | None = None

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "triage_id": self.triage_id,
            "work_order_id": self.work_order_id,
            "success": self.success,
            "parent_slug": self.parent_slug,
            "child_count": self.child_count,
            "confidence": self.confidence,
            "parse_fallback": self.parse_fallback,
            "error": self.error,
        }


@dataclass(slots=True)
class DiagnosticianReport:
    worker_id: str
    claimed: int = 0
    processed: list[ItemOutcome] = field(default_factory=list)
    elapsed_ms: int = 0

    @property
    def succeeded(self) -> int:
        return sum(1 for outcome in self.processed if outcome.success)

    @property
    def failed(self) -> int:
        return len(self.processed) - self.succeeded

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "worker_id": self.worker_id,
            "claimed": self.claimed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "elapsed_ms": self.elapsed_ms,
            "processed": [outcome.to_dict() for outcome in self.processed],
        }


class Diagnostician:
    """Bounded, claim-based root-cause analysis over the diagnostician triage queue."""

    def __init__(
        self,
        db: StateDB,
        gateway: TransitionGateway,
        collaborator: ReasoningCollaborator,
        *,
        settings: DiagnosticianSettings | None = None,
        renderer: RCAPromptRenderer | None = None,
        logger: Any | None = None,
    ) -> None:
        self._db = db
        self._gateway = gateway
        self._collaborator = collaborator
        self._settings = settings if settings is not None else DiagnosticianSettings()
        self._renderer = renderer if renderer is not None else RCAPromptRenderer()
        self._work_orders = WorkOrderRepo(db)
        self._exec_log = ExecutionLogRepo(db)
        self._qa_findings = QAFindingRepo(db)
        self._lessons = LessonRepo(db)
        self._triage = TriageRepo(db)
        self._audit = AuditRepo(db)
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def settings(self) -> DiagnosticianSettings:
        return self._settings

    def run_batch(
        self, worker_id: str | None = None, now: datetime | None = None
    ) -> DiagnosticianReport:
        worker = worker_id or f"diagnostician-{os.getpid()}"
        started = time.monotonic()
        report = DiagnosticianReport(worker_id=worker)

        entries = self._triage.claim_batch(
            worker,
            escalate_to=ESCALATE_TO_DIAGNOSTICIAN,
            limit=self._settings.batch_size,
            lease_seconds=self._settings.claim_lease_seconds,
            now=now,
        )
        report.claimed = len(entries)
        if not entries:
            report.elapsed_ms = max(int(round((time.monotonic() - started) * 1000)), 0)
            self._logger.info("diagnostician_idle", worker_id=worker)
            return report

        self._logger.info("diagnostician_batch_claimed", worker_id=worker, claimed=len(entries))
        for entry in entries:
            log = self._logger.bind(triage_id=entry.id, work_order_id=entry.work_order_id)
            try:
                outcome = self._process(entry, worker, log, now=now)
            except Exception as exc:  # noqa: BLE001
                message = f"{type(exc).__name__}: {exc}"
                log.error("diagnosis_failed", error=message)
                self._release(entry, worker, message, log, now=now)
                outcome = ItemOutcome(
                    triage_id=entry.id,
                    work_order_id=entry.work_order_id,
                    success=False,
                    error=message,
                )
            report.processed.append(outcome)

        report.elapsed_ms = max(int(round((time.monotonic() - started) * 1000)), 0)
        self._logger.info(
            "diagnostician_batch_complete",
            worker_id=worker,
            claimed=report.claimed,
            succeeded=report.succeeded,
            failed=report.failed,
            elapsed_ms=report.elapsed_ms,
        )
        return report

    def handle_task(self, message: TaskMessage) -> dict[str, JSONValue]:
        """``diagnose`` topic handler for ``TaskWorker``."""

        worker_id = f"diagnostician-{message.claimed_by or os.getpid()}"
        return self.run_batch(worker_id=worker_id).to_dict()

    def _process(
        self, entry: TriageEntry, worker_id: str, log: Any, *, now: datetime | None
    ) -> ItemOutcome:
        context = self._load_context(entry)
        diagnosis = self._diagnose(context, log)
        parent, children = self._materialize(entry, context.work_order, diagnosis, now=now)

        at = now or utc_now()
        with self._db.transaction() as conn:
            self._audit.append(
                AuditRecord(
                    id=ids.generate_audit_id(),
                    work_order_id=entry.work_order_id,
                    event_type=DIAGNOSIS_AUDIT_EVENT,
                    actor=DIAGNOSTICIAN_ACTOR,
                    payload={
                        "triage_id": entry.id,
                        "parent_id": parent.id,
                        "parent_slug": parent.slug,
                        "child_ids": [child.id for child in children],
                        "confidence": diagnosis.confidence,
                        "parse_fallback": diagnosis.parse_fallback,
                        "template_hash": self._renderer.template_hash,
                    },
                    created_at=at,
                ),
                conn=conn,
            )
            resolved = self._triage.resolve(
                entry.id,
                worker_id=worker_id,
                notes=f"RCA complete, created parent WO: {parent.slug}",
                now=at,
                conn=conn,
            )
        if not resolved:
            log.warning("triage_claim_lost", parent_slug=parent.slug)

        log.info(
            "diagnosis_complete",
            parent_slug=parent.slug,
            child_count=len(children),
            confidence=diagnosis.confidence,
            parse_fallback=diagnosis.parse_fallback,
        )
        return ItemOutcome(
            triage_id=entry.id,
            work_order_id=entry.work_order_id,
            success=True,
            parent_slug=parent.slug,
            child_count=len(children),
            confidence=diagnosis.confidence,
            parse_fallback=diagnosis.parse_fallback,
        )

    def _load_context(self, entry: TriageEntry) -> RCAContext:
        work_order = self._work_orders.get(entry.work_order_id)
        if work_order is None:
            raise LookupError(f"work order not found: {entry.work_order_id}")
        return RCAContext(
            triage=entry,
            work_order=work_order,
            execution_log=tuple(
                self._exec_log.list_for_work_order(
                    work_order.id, limit=self._settings.exec_log_tail, descending=True
                )
            ),
            qa_findings=tuple(self._qa_findings.list_open(work_order.id)),
            lessons=tuple(
                self._lessons.list_promoted(
                    lesson_categories(entry.triage_type), limit=self._settings.lesson_limit
                )
            ),
        )

    def _diagnose(self, context: RCAContext, log: Any) -> Diagnosis:
        prompt = self._renderer.render(context)
        request = ReasoningRequest(
            system_prompt=prompt.system_prompt,
            user_prompt=prompt.user_prompt,
            max_tokens=self._settings.max_tokens,
            temperature=self._settings.temperature,
            model=self._settings.model,
        )
        timeout = self._settings.collaborator_timeout_seconds
        started = time.monotonic()
        try:
            response = asyncio.run(
                asyncio.wait_for(self._collaborator.complete(request), timeout=timeout)
            )
        except TimeoutError as exc:
            raise CollaboratorTimeoutError(
                f"collaborator did not answer within {timeout:g}s",
                provider=getattr(self._collaborator, "provider_name", "collaborator"),
            ) from exc
        log.info(
            "collaborator_answered",
            model=response.model,
            request_id=response.request_id,
            elapsed_ms=max(int(round((time.monotonic() - started) * 1000)), 0),
        )
        return parse_diagnosis(response.text)

    def _materialize(
        self,
        entry: TriageEntry,
        work_order: WorkOrder,
        diagnosis: Diagnosis,
        *,
        now: datetime | None,
    ) -> tuple[WorkOrder, list[WorkOrder]]:
        parent = self._gateway.create_draft_work_order(
            name=f"[RCA] {entry.triage_type.value} issue in {work_order.slug}",
            objective=parent_objective(diagnosis),
            acceptance_criteria=PARENT_ACCEPTANCE_CRITERIA,
            priority=(
                Priority.P0_CRITICAL if entry.severity is Severity.CRITICAL else Priority.P1_HIGH
            ),
            tags=(*PARENT_TAGS, entry.triage_type.value),
            source=DIAGNOSTICIAN_SOURCE,
            actor=DIAGNOSTICIAN_ACTOR,
            now=now,
        )

        children: list[WorkOrder] = []
        for index, task in enumerate(diagnosis.fix_tasks):
            try:
                child = self._gateway.create_draft_work_order(
                    name=task.name,
                    objective=task.objective,
                    acceptance_criteria=task.acceptance_criteria,
                    priority=Priority.P2_MEDIUM,
                    tags=(*task.tags, CHILD_TAG),
                    parent_id=parent.id,
                    source=DIAGNOSTICIAN_SOURCE,
                    actor=DIAGNOSTICIAN_ACTOR,
                    now=now,
                )
            except TransitionError as exc:
                self._logger.warning(
                    "fix_task_creation_failed",
                    parent_slug=parent.slug,
                    task_index=index,
                    code=exc.code.value,
                    error=exc.message,
                )
                continue
            children.append(child)
        return parent, children

    def _release(
        self, entry: TriageEntry, worker_id: str, message: str, log: Any, *, now: datetime | None
    ) -> None:
        try:
            self._triage.release(
                entry.id, worker_id=worker_id, notes=f"RCA failed: {message}", now=now
            )
        except Exception as exc:  # noqa: BLE001
            # The lease expiry still frees the entry for the next run.
            log.error("triage_release_failed", error=str(exc))


def parent_objective(diagnosis: Diagnosis) -> str:
    factors = "\n".join(f"- {factor}" for factor in diagnosis.contributing_factors) or "- none"
    return (
        f"Root cause: {diagnosis.root_cause}\n\n"
        f"Recommended fix: {diagnosis.recommended_fix}\n\n"
        f"Contributing factors:\n{factors}"
    )


__all__ = [
    "CHILD_TAG",
    "DIAGNOSIS_AUDIT_EVENT",
    "LESSON_CATEGORIES",
    "PARENT_ACCEPTANCE_CRITERIA",
    "PARENT_TAGS",
    "Diagnostician",
    "DiagnosticianReport",
    "DiagnosticianSettings",
    "ItemOutcome",
    "lesson_categories",
    "parent_objective",
]
