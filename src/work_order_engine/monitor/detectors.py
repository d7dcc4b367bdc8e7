"""
work-order-engine — Tier-1 anomaly detectors

File: src/work_order_engine/monitor/detectors.py
Last updated: 2026-10-18

Purpose
- Fixed battery of detectors over active work orders: auto_unblock, stuck, orphan,
  mismatch, spiral. Each finding becomes a triage entry with a typed diagnostic context.

Functional requirements
- Every detector re-checks for an unresolved entry of its type before inserting; the
  partial unique index on the triage queue backs this up under concurrent sweeps.
- Auto-unblock is the only detector that writes to a work order. It clears ``depends_on``
  (never ``status`` directly) and moves blocked work back to ready through the gateway.
- Mismatch also scans done and cancelled parents; an active child under one is a
  critical finding because settlement should already have closed it.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Final

import structlog

from work_order_engine.constants import (
    COMPLETION_PHASES,
    ESCALATE_TO_OPS,
    KEEPALIVE_PHASES,
    MONITOR_ACTOR,
    STREAM_PHASE,
)
from work_order_engine.domain import ids
from work_order_engine.domain.models import (
    TERMINAL_STATUSES,
    AuditRecord,
    AutoUnblockContext,
    DiagnosticContext,
    ExecutionLogEntry,
    MismatchContext,
    OrphanContext,
    Severity,
    SpiralContext,
    StuckContext,
    TriageEntry,
    TriageType,
    WorkOrder,
    WorkOrderStatus,
)
from work_order_engine.lifecycle.settlement import INVARIANT_VIOLATION_PHASE
from work_order_engine.lifecycle.transitions import (
    TransitionError,
    TransitionEvent,
    TransitionGateway,
)
from work_order_engine.persistence.repositories import (
    AuditRepo,
    ExecutionLogRepo,
    TriageRepo,
    WorkOrderRepo,
)

if TYPE_CHECKING:
    from work_order_engine.persistence.state_db import StateDB

DEPENDENCIES_CLEARED_EVENT: Final[str] = "dependencies_cleared"

READ_TOOL_MARKERS: Final[tuple[str, ...]] = ("read", "execute_sql", "list", "get", "search")
WRITE_TOOL_MARKERS: Final[tuple[str, ...]] = (
    "write",
    "apply_migration",
    "deploy",
    "create",
    "update",
    "delete",
)

LOCAL_EXECUTION_MODE: Final[str] = "local_cli"
SETTLED_PARENT_STATUSES: Final[tuple[WorkOrderStatus, ...]] = (
    WorkOrderStatus.DONE,
    WorkOrderStatus.CANCELLED,
)


@dataclass(frozen=True, slots=True)
class MonitorSettings:
    stuck_after_minutes: int = 30
    activity_window_minutes: int = 10
    orphan_after_minutes: int = 10
    spiral_min_turns: int = 10
    spiral_read_ratio: float = 0.5
    checkpoint_grace_minutes: int = 15
    exec_log_scan_limit: int = 50

    def __post_init__(self) -> None:
        for name in (
            "stuck_after_minutes",
            "activity_window_minutes",
            "orphan_after_minutes",
            "checkpoint_grace_minutes",
        ):
            if getattr(self, name) < 0:
                raise ValueError(f"MonitorSettings.{name} must be >= 0")
        if self.spiral_min_turns < 1:
            raise ValueError("MonitorSettings.spiral_min_turns must be >= 1")
        if not 0.0 <= self.spiral_read_ratio <= 1.0:
            raise ValueError("MonitorSettings.spiral_read_ratio must be within [0, 1]")
        if self.exec_log_scan_limit < 1:
            raise ValueError("MonitorSettings.exec_log_scan_limit must be >= 1")

    @classmethod
    def from_mapping(cls, values: Mapping[str, object]) -> MonitorSettings:
        known = set(cls.__dataclass_fields__)
        selected = {key: value for key, value in values.items() if key in known}
        return cls(**selected)  # type: ignore[arg-type]


@dataclass(slots=True)
class DetectorResult:
    """Entries a detector inserted this run plus unresolved ones it found already queued."""

    triage_type: TriageType
    created: list[TriageEntry] = field(default_factory=list)
    existing: list[TriageEntry] = field(default_factory=list)

    @property
    def observed(self) -> list[TriageEntry]:
        return [*self.created, *self.existing]


def classify_tool(name: str) -> str | None:
    """Return ``"write"``, ``"read"`` or ``None``; write markers take precedence."""

    lowered = name.lower()
    if any(marker in lowered for marker in WRITE_TOOL_MARKERS):
        return "write"
    if any(marker in lowered for marker in READ_TOOL_MARKERS):
        return "read"
    return None


def _entry_tools(entry: ExecutionLogEntry) -> tuple[str, ...]:
    labels = entry.tool_labels()
    if labels:
        return labels
    detail_tool = entry.detail.get("tool_name")
    return (detail_tool,) if isinstance(detail_tool, str) and detail_tool else ()


def _minutes(value: int) -> timedelta:
    return timedelta(minutes=value)


class DetectorSuite:
    """Runs each detector against the current store contents."""

    def __init__(
        self,
        db: StateDB,
        gateway: TransitionGateway,
        *,
        settings: MonitorSettings | None = None,
        logger: Any | None = None,
    ) -> None:
        self._db = db
        self._gateway = gateway
        self._settings = settings if settings is not None else MonitorSettings()
        self._work_orders = WorkOrderRepo(db)
        self._exec_log = ExecutionLogRepo(db)
        self._triage = TriageRepo(db)
        self._audit = AuditRepo(db)
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def settings(self) -> MonitorSettings:
        return self._settings

    def auto_unblock(self, now: datetime) -> DetectorResult:
        result = DetectorResult(TriageType.AUTO_UNBLOCK)
        candidates = self._work_orders.list_all_by_status(
            (WorkOrderStatus.READY, WorkOrderStatus.BLOCKED)
        )
        for work_order in candidates:
            if not work_order.depends_on or not self._dependencies_done(work_order):
                continue
            cleared = work_order.depends_on
            if work_order.status is WorkOrderStatus.BLOCKED:
                try:
                    self._gateway.transition(
                        work_order.id,
                        TransitionEvent.DEPENDENCY_SATISFIED,
                        {"clear_dependencies": True, "reason": "all dependencies done"},
                        actor=MONITOR_ACTOR,
                        now=now,
                    )
                except TransitionError as exc:
                    self._logger.warning(
                        "dependency_unblock_rejected",
                        work_order_id=work_order.id,
                        code=exc.code.value,
                        reason=exc.message,
                    )
                    continue
            elif not self._clear_dependencies(work_order, now=now):
                continue
            self._logger.info(
                "dependencies_cleared",
                work_order_id=work_order.id,
                slug=work_order.slug,
                previous_status=work_order.status.value,
                cleared_count=len(cleared),
            )
            self._record(
                result,
                work_order,
                severity=Severity.INFO,
                context=AutoUnblockContext(cleared_dependencies=cleared),
                now=now,
            )
        return result

    def stuck(self, now: datetime) -> DetectorResult:
        result = DetectorResult(TriageType.STUCK)
        stale_before = now - _minutes(self._settings.stuck_after_minutes)
        active_after = now - _minutes(self._settings.activity_window_minutes)
        grace_after = now - _minutes(self._settings.checkpoint_grace_minutes)

        for work_order in self._work_orders.list_all_by_status((WorkOrderStatus.IN_PROGRESS,)):
            if work_order.execution_mode == LOCAL_EXECUTION_MODE:
                continue
            started_at = work_order.started_at or work_order.updated_at
            if started_at >= stale_before:
                continue
            latest = self._exec_log.latest(work_order.id)
            last_activity = latest.created_at if latest is not None else work_order.updated_at
            if last_activity >= active_after:
                continue
            if (
                latest is not None
                and latest.phase in KEEPALIVE_PHASES
                and latest.created_at >= grace_after
            ):
                continue
            self._record(
                result,
                work_order,
                severity=Severity.HIGH,
                context=StuckContext(
                    slug=work_order.slug,
                    started_at=started_at,
                    last_activity=last_activity,
                ),
                escalate_to=ESCALATE_TO_OPS,
                now=now,
            )
        return result

    def orphan(self, now: datetime) -> DetectorResult:
        result = DetectorResult(TriageType.ORPHAN)
        idle_before = now - _minutes(self._settings.orphan_after_minutes)
        for work_order in self._work_orders.list_all_by_status((WorkOrderStatus.READY,)):
            if work_order.claimed_by is not None or work_order.created_at >= idle_before:
                continue
            idle_minutes = int((now - work_order.created_at).total_seconds() // 60)
            self._record(
                result,
                work_order,
                severity=Severity.MEDIUM,
                context=OrphanContext(idle_minutes=idle_minutes),
                now=now,
            )
        return result

    def mismatch(self, now: datetime) -> DetectorResult:
        result = DetectorResult(TriageType.MISMATCH)
        flagged = self._settled_parent_violations(result, now=now)
        for work_order in self._work_orders.list_all_by_status((WorkOrderStatus.IN_PROGRESS,)):
            if work_order.id in flagged:
                continue
            latest = self._exec_log.latest(work_order.id)
            if latest is None or latest.phase not in COMPLETION_PHASES:
                continue
            self._record(
                result,
                work_order,
                severity=Severity.MEDIUM,
                context=MismatchContext(status=work_order.status.value, last_phase=latest.phase),
                now=now,
            )
        return result

    def spiral(self, now: datetime) -> DetectorResult:
        result = DetectorResult(TriageType.SPIRAL)
        limit = max(self._settings.exec_log_scan_limit, self._settings.spiral_min_turns)
        for work_order in self._work_orders.list_all_by_status((WorkOrderStatus.IN_PROGRESS,)):
            turns = self._exec_log.list_for_work_order(
                work_order.id, limit=limit, phase=STREAM_PHASE
            )
            if len(turns) < self._settings.spiral_min_turns:
                continue
            reads = 0
            writes = 0
            for turn in turns:
                for tool in _entry_tools(turn):
                    kind = classify_tool(tool)
                    if kind == "read":
                        reads += 1
                    elif kind == "write":
                        writes += 1
            if reads + writes == 0:
                continue
            ratio = reads / (reads + writes)
            if ratio <= self._settings.spiral_read_ratio:
                continue
            self._record(
                result,
                work_order,
                severity=Severity.MEDIUM,
                context=SpiralContext(read_ratio=round(ratio, 4), turns=len(turns)),
                now=now,
            )
        return result

    def _settled_parent_violations(self, result: DetectorResult, *, now: datetime) -> set[str]:
        """Active children under a done or cancelled parent; settlement should have closed them."""

        flagged: set[str] = set()
        settled = self._work_orders.list_all_by_status(SETTLED_PARENT_STATUSES)
        for parent in settled:
            for child in self._work_orders.list_children(parent.id):
                if child.status in TERMINAL_STATUSES or child.id in flagged:
                    continue
                flagged.add(child.id)
                self._logger.error(
                    INVARIANT_VIOLATION_PHASE,
                    root_id=parent.id,
                    root_status=parent.status.value,
                    descendant_id=child.id,
                    descendant_status=child.status.value,
                )
                self._record(
                    result,
                    child,
                    severity=Severity.CRITICAL,
                    context=MismatchContext(
                        status=child.status.value, last_phase=INVARIANT_VIOLATION_PHASE
                    ),
                    now=now,
                )
        return flagged

    def _dependencies_done(self, work_order: WorkOrder) -> bool:
        found = self._work_orders.get_many(work_order.depends_on)
        return all(
            dependency in found and found[dependency].status is WorkOrderStatus.DONE
            for dependency in work_order.depends_on
        )

    def _clear_dependencies(self, work_order: WorkOrder, *, now: datetime) -> bool:
        cleared = replace(work_order, depends_on=(), updated_at=max(now, work_order.updated_at))
        with self._db.transaction() as conn:
            if not self._work_orders.update_attributes(cleared, conn=conn):
                self._logger.info(
                    "dependencies_clear_skipped",
                    work_order_id=work_order.id,
                    reason="status_changed",
                )
                return False
            self._audit.append(
                AuditRecord(
                    id=ids.generate_audit_id(),
                    work_order_id=work_order.id,
                    event_type=DEPENDENCIES_CLEARED_EVENT,
                    actor=MONITOR_ACTOR,
                    previous_status=work_order.status,
                    new_status=work_order.status,
                    payload={"cleared_dependencies": list(work_order.depends_on)},
                    created_at=now,
                ),
                conn=conn,
            )
        return True

    def _record(
        self,
        result: DetectorResult,
        work_order: WorkOrder,
        *,
        severity: Severity,
        context: DiagnosticContext,
        now: datetime,
        escalate_to: str | None = None,
    ) -> None:
        existing = self._triage.find_unresolved(work_order.id, result.triage_type)
        if existing is not None:
            result.existing.append(existing)
            return

        entry = TriageEntry(
            id=ids.generate_triage_id(),
            work_order_id=work_order.id,
            triage_type=result.triage_type,
            severity=severity,
            diagnostic_context=context,
            escalate_to=escalate_to,
            created_by=MONITOR_ACTOR,
            created_at=now,
            updated_at=now,
        )
        if self._triage.add_if_absent(entry):
            result.created.append(entry)
            self._logger.info(
                "triage_entry_created",
                triage_id=entry.id,
                work_order_id=work_order.id,
                slug=work_order.slug,
                triage_type=entry.triage_type.value,
                severity=entry.severity.value,
            )
            return

        # A concurrent sweep inserted first.
        concurrent = self._triage.find_unresolved(work_order.id, result.triage_type)
        if concurrent is not None:
            result.existing.append(concurrent)


__all__ = [
    "DEPENDENCIES_CLEARED_EVENT",
    "READ_TOOL_MARKERS",
    "WRITE_TOOL_MARKERS",
    "DetectorResult",
    "DetectorSuite",
    "MonitorSettings",
    "classify_tool",
]
