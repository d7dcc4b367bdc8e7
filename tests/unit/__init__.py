"""Shared deterministic fixtures and builders for unit tests."""

from __future__ import annotations

from dataclasses import replace
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Final

from work_order_engine.constants import ESCALATE_TO_DIAGNOSTICIAN
from work_order_engine.domain import ids
from work_order_engine.domain.models import (
    ExecutionLogEntry,
    JSONValue,
    MismatchContext,
    Priority,
    Severity,
    StuckContext,
    TriageEntry,
    TriageState,
    TriageType,
    WorkOrder,
    WorkOrderStatus,
)
from work_order_engine.persistence.repositories import (
    ExecutionLogRepo,
    TriageRepo,
    WorkOrderRepo,
)
from work_order_engine.persistence.state_db import StateDB

if TYPE_CHECKING:
    from collections.abc import Sequence
    from pathlib import Path

BASE_TS: Final[datetime] = datetime(2026, 3, 2, 9, 0, 0, tzinfo=UTC)

VALID_DIAGNOSIS: Final[str] = """{
  "root_cause": "Migration step waits on a lock held by the nightly export",
  "contributing_factors": ["export runs without timeout", "no lock diagnostics"],
  "recommended_fix": "Bound the export transaction and retry the migration",
  "confidence": 0.82,
  "fix_tasks": [
    {
      "name": "Add timeout to nightly export",
      "objective": "Cap export transactions at 60 seconds",
      "acceptance_criteria": ["Export aborts after 60s", "Alert fires on abort"],
      "tags": ["export"]
    },
    {
      "name": "Retry blocked migration",
      "objective": "Re-run the migration once the lock is released",
      "acceptance_criteria": "Migration completes"
    }
  ]
}"""


def fixed_now(minutes: float = 0) -> datetime:
    return BASE_TS + timedelta(minutes=minutes)


def make_db(tmp_path: Path) -> StateDB:
    db = StateDB(tmp_path / "state" / "work_orders.sqlite3")
    db.migrate()
    return db


def seed_work_order(
    db: StateDB,
    *,
    name: str = "Seeded work order",
    objective: str = "Do the seeded thing",
    status: WorkOrderStatus = WorkOrderStatus.DRAFT,
    parent_id: str | None = None,
    depends_on: Sequence[str] = (),
    priority: Priority = Priority.P2_MEDIUM,
    execution_mode: str = "remote",
    claimed_by: str | None = None,
    created_at: datetime | None = None,
    started_at: datetime | None = None,
) -> WorkOrder:
    """Insert a work order directly, bypassing the gateway, in any starting status."""

    repo = WorkOrderRepo(db)
    created = created_at or BASE_TS
    work_order = WorkOrder(
        id=ids.generate_work_order_id(),
        slug=repo.next_slug(),
        name=name,
        objective=objective,
        status=status,
        priority=priority,
        parent_id=parent_id,
        depends_on=tuple(depends_on),
        execution_mode=execution_mode,
        claimed_by=claimed_by,
        created_at=created,
        updated_at=max(created, started_at or created),
        started_at=started_at,
    )
    return repo.add(work_order)


def seed_hierarchy(
    db: StateDB,
    *,
    children: int,
    parent_status: WorkOrderStatus = WorkOrderStatus.IN_PROGRESS,
    child_status: WorkOrderStatus = WorkOrderStatus.IN_PROGRESS,
) -> tuple[WorkOrder, list[WorkOrder]]:
    parent = seed_work_order(db, name="Parent", status=parent_status)
    kids = [
        seed_work_order(db, name=f"Child {index}", status=child_status, parent_id=parent.id)
        for index in range(1, children + 1)
    ]
    return parent, kids


def append_log(
    db: StateDB,
    work_order_id: str,
    *,
    phase: str = "stream",
    detail: dict[str, JSONValue] | None = None,
    tool_names: Sequence[str] = (),
    created_at: datetime | None = None,
) -> ExecutionLogEntry:
    entry = ExecutionLogEntry(
        id=ids.generate_exec_log_id(),
        work_order_id=work_order_id,
        phase=phase,
        tool_names=tuple(tool_names),
        detail=detail or {},
        created_at=created_at or BASE_TS,
    )
    return ExecutionLogRepo(db).append(entry)


def seed_escalated_entry(
    db: StateDB,
    work_order: WorkOrder,
    *,
    triage_type: TriageType = TriageType.STUCK,
    severity: Severity = Severity.HIGH,
    created_at: datetime | None = None,
) -> TriageEntry:
    at = created_at or BASE_TS
    context = (
        StuckContext(slug=work_order.slug, started_at=at, last_activity=at)
        if triage_type is TriageType.STUCK
        else MismatchContext(status=work_order.status.value, last_phase="execution_complete")
    )
    entry = TriageEntry(
        id=ids.generate_triage_id(),
        work_order_id=work_order.id,
        triage_type=triage_type,
        severity=severity,
        diagnostic_context=context,
        state=TriageState.ESCALATED,
        escalate_to=ESCALATE_TO_DIAGNOSTICIAN,
        created_at=at,
        updated_at=at,
    )
    assert TriageRepo(db).add_if_absent(entry)
    return entry


def reload(db: StateDB, work_order: WorkOrder) -> WorkOrder:
    loaded = WorkOrderRepo(db).get(work_order.id)
    assert loaded is not None
    return loaded


def with_status(work_order: WorkOrder, status: WorkOrderStatus) -> WorkOrder:
    return replace(work_order, status=status)
