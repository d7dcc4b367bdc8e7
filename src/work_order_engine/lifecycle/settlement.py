"""
work-order-engine — settlement engine

File: src/work_order_engine/lifecycle/settlement.py
Last updated: 2026-10-18

Purpose
- Reacts to terminal transitions. ``done``/``cancelled`` cascade cancellation down the
  descendant tree; ``failed`` escalates to the parent once every sibling has failed.

Functional requirements
- Explicit breadth-first traversal over the parent->children index with a visited set.
- Idempotent: re-running settlement over a settled subtree changes nothing.
- Runs inside the caller's transaction so a terminal parent is never committed alongside
  non-terminal children.
- One audit record per cancelled descendant and per escalated ancestor.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any

import structlog

from work_order_engine.constants import (
    ESCALATE_TO_DIAGNOSTICIAN,
    SETTLEMENT_ACTOR,
    STREAM_PHASE,
)
from work_order_engine.domain import ids
from work_order_engine.domain.models import (
    TERMINAL_STATUSES,
    AuditRecord,
    ExecutionLogEntry,
    JSONValue,
    MismatchContext,
    Severity,
    TriageEntry,
    TriageState,
    TriageType,
    WorkOrder,
    WorkOrderStatus,
    utc_now,
)
from work_order_engine.persistence.repositories import (
    AuditRepo,
    ExecutionLogRepo,
    TriageRepo,
    WorkOrderRepo,
)

if TYPE_CHECKING:
    import sqlite3
    from datetime import datetime

    from work_order_engine.persistence.state_db import StateDB

CASCADE_AUDIT_EVENT = "cancelled_by_parent_settlement"
ESCALATION_AUDIT_EVENT = "escalated_by_child_failure"
INVARIANT_VIOLATION_PHASE = "settlement_invariant_violation"

_CASCADE_TRIGGERS = frozenset({WorkOrderStatus.DONE, WorkOrderStatus.CANCELLED})


class SettlementError(RuntimeError):
    """Raised when a settlement write loses its compare-and-set."""


@dataclass(frozen=True, slots=True)
class SettlementOutcome:
    cancelled_descendants: tuple[str, ...] = ()
    failed_ancestors: tuple[str, ...] = ()
    invariant_violations: tuple[str, ...] = ()

    @property
    def changed(self) -> bool:
        return bool(self.cancelled_descendants or self.failed_ancestors)

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "cancelled_descendants": list(self.cancelled_descendants),
            "failed_ancestors": list(self.failed_ancestors),
            "invariant_violations": list(self.invariant_violations),
        }


class SettlementEngine:
    """Cascades terminal transitions across the work order hierarchy."""

    def __init__(self, db: StateDB, *, logger: Any | None = None) -> None:
        self._db = db
        self._work_orders = WorkOrderRepo(db)
        self._audit = AuditRepo(db)
        self._exec_log = ExecutionLogRepo(db)
        self._triage = TriageRepo(db)
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def on_terminal(
        self,
        work_order: WorkOrder,
        *,
        conn: sqlite3.Connection,
        now: datetime | None = None,
    ) -> SettlementOutcome:
        """Apply cascade/escalation for ``work_order``, which must already be terminal."""

        if work_order.status not in TERMINAL_STATUSES:
            return SettlementOutcome()
        at = now or utc_now()

        if work_order.status in _CASCADE_TRIGGERS:
            cancelled = self._cascade(work_order, conn=conn, now=at)
            violations = self._check_subtree(work_order, conn=conn, now=at)
            return SettlementOutcome(
                cancelled_descendants=cancelled,
                invariant_violations=violations,
            )

        failed = self._escalate_upward(work_order, conn=conn, now=at)
        return SettlementOutcome(failed_ancestors=failed)

    def settle(self, work_order_id: str, *, now: datetime | None = None) -> SettlementOutcome:
        """Re-run settlement for one work order in its own transaction (crash resume)."""

        with self._db.transaction() as conn:
            work_order = self._work_orders.get(work_order_id, conn=conn)
            if work_order is None:
                raise KeyError(work_order_id)
            outcome = self.on_terminal(work_order, conn=conn, now=now)
        self._logger.info(
            "settlement_rerun",
            work_order_id=work_order_id,
            status=work_order.status.value,
            **outcome.to_dict(),
        )
        return outcome

    def _cascade(
        self,
        root: WorkOrder,
        *,
        conn: sqlite3.Connection,
        now: datetime,
    ) -> tuple[str, ...]:
        visited: set[str] = {root.id}
        queue: deque[WorkOrder] = deque([root])
        cancelled: list[str] = []

        while queue:
            parent = queue.popleft()
            for child in self._work_orders.list_children(parent.id, conn=conn):
                if child.id in visited:
                    self._logger.error(
                        "settlement_cycle_detected",
                        root_id=root.id,
                        parent_id=parent.id,
                        child_id=child.id,
                    )
                    continue
                visited.add(child.id)

                if child.status in TERMINAL_STATUSES:
                    queue.append(child)
                    continue

                settled = self._cancel_child(root, parent, child, conn=conn, now=now)
                cancelled.append(settled.id)
                queue.append(settled)

        if cancelled:
            self._exec_log.append(
                ExecutionLogEntry(
                    id=ids.generate_exec_log_id(),
                    work_order_id=root.id,
                    phase=STREAM_PHASE,
                    agent_name=SETTLEMENT_ACTOR,
                    detail={
                        "event_type": "lifecycle_settlement",
                        "cancelled_count": len(cancelled),
                    },
                    created_at=now,
                ),
                conn=conn,
            )
            self._logger.info(
                "settlement_cascade_applied",
                root_id=root.id,
                root_slug=root.slug,
                root_status=root.status.value,
                cancelled_count=len(cancelled),
            )
        return tuple(cancelled)

    def _cancel_child(
        self,
        root: WorkOrder,
        parent: WorkOrder,
        child: WorkOrder,
        *,
        conn: sqlite3.Connection,
        now: datetime,
    ) -> WorkOrder:
        note = f"[Auto-cancelled: parent {parent.slug} reached {parent.status.value}]"
        summary = f"{child.summary} {note}" if child.summary else note
        settled = replace(
            child,
            status=WorkOrderStatus.CANCELLED,
            summary=summary,
            cancellation_reason=f"Parent {parent.slug} completed with status: {parent.status.value}",
            completed_at=now,
            updated_at=max(now, child.updated_at),
        )
        if not self._work_orders.apply_status_change(
            settled, expected_status=child.status, conn=conn
        ):
            raise SettlementError(f"concurrent status change on {child.id} during cascade")

        self._audit.append(
            AuditRecord(
                id=ids.generate_audit_id(),
                work_order_id=child.id,
                event_type=CASCADE_AUDIT_EVENT,
                actor=SETTLEMENT_ACTOR,
                previous_status=child.status,
                new_status=WorkOrderStatus.CANCELLED,
                payload={
                    "parent_id": parent.id,
                    "parent_slug": parent.slug,
                    "parent_status": parent.status.value,
                    "root_id": root.id,
                    "root_slug": root.slug,
                    "child_slug": child.slug,
                    "reason": "parent_terminal_settlement",
                },
                created_at=now,
            ),
            conn=conn,
        )
        return settled

    def _escalate_upward(
        self,
        failed: WorkOrder,
        *,
        conn: sqlite3.Connection,
        now: datetime,
    ) -> tuple[str, ...]:
        visited: set[str] = {failed.id}
        escalated: list[str] = []
        current = failed

        while current.parent_id is not None:
            parent = self._work_orders.get(current.parent_id, conn=conn)
            if parent is None:
                break
            if parent.id in visited:
                self._logger.error(
                    "settlement_cycle_detected",
                    root_id=failed.id,
                    parent_id=parent.id,
                    child_id=current.id,
                )
                break
            visited.add(parent.id)
            if parent.status in TERMINAL_STATUSES:
                break

            siblings = self._work_orders.list_children(parent.id, conn=conn)
            if not siblings or any(s.status is not WorkOrderStatus.FAILED for s in siblings):
                break

            exhausted = replace(
                parent,
                status=WorkOrderStatus.FAILED,
                summary=f"All {len(siblings)} remediation attempts exhausted. Review required.",
                completed_at=now,
                updated_at=max(now, parent.updated_at),
            )
            if not self._work_orders.apply_status_change(
                exhausted, expected_status=parent.status, conn=conn
            ):
                raise SettlementError(f"concurrent status change on {parent.id} during escalation")

            self._audit.append(
                AuditRecord(
                    id=ids.generate_audit_id(),
                    work_order_id=parent.id,
                    event_type=ESCALATION_AUDIT_EVENT,
                    actor=SETTLEMENT_ACTOR,
                    previous_status=parent.status,
                    new_status=WorkOrderStatus.FAILED,
                    payload={
                        "failed_child_id": current.id,
                        "failed_child_slug": current.slug,
                        "child_count": len(siblings),
                        "reason": "all_remediations_failed",
                    },
                    created_at=now,
                ),
                conn=conn,
            )
            self._exec_log.append(
                ExecutionLogEntry(
                    id=ids.generate_exec_log_id(),
                    work_order_id=parent.id,
                    phase="failed",
                    agent_name=SETTLEMENT_ACTOR,
                    success=False,
                    detail={
                        "event_type": "remediation_exhausted",
                        "child_count": len(siblings),
                    },
                    created_at=now,
                ),
                conn=conn,
            )
            self._logger.warning(
                "settlement_parent_failed",
                parent_id=parent.id,
                parent_slug=parent.slug,
                child_count=len(siblings),
            )
            escalated.append(parent.id)
            current = exhausted

        return tuple(escalated)

    def _check_subtree(
        self,
        root: WorkOrder,
        *,
        conn: sqlite3.Connection,
        now: datetime,
    ) -> tuple[str, ...]:
        """Record any active descendant left under a settled root as a critical finding."""

        violations: list[str] = []
        visited: set[str] = {root.id}
        queue: deque[str] = deque([root.id])
        while queue:
            parent_id = queue.popleft()
            for child in self._work_orders.list_children(parent_id, conn=conn):
                if child.id in visited:
                    continue
                visited.add(child.id)
                queue.append(child.id)
                if child.status in TERMINAL_STATUSES:
                    continue
                violations.append(child.id)
                self._logger.error(
                    INVARIANT_VIOLATION_PHASE,
                    root_id=root.id,
                    root_status=root.status.value,
                    descendant_id=child.id,
                    descendant_status=child.status.value,
                )
                self._triage.add_if_absent(
                    TriageEntry(
                        id=ids.generate_triage_id(),
                        work_order_id=child.id,
                        triage_type=TriageType.MISMATCH,
                        severity=Severity.CRITICAL,
                        diagnostic_context=MismatchContext(
                            status=child.status.value,
                            last_phase=INVARIANT_VIOLATION_PHASE,
                        ),
                        state=TriageState.ESCALATED,
                        escalate_to=ESCALATE_TO_DIAGNOSTICIAN,
                        created_by=SETTLEMENT_ACTOR,
                        created_at=now,
                        updated_at=now,
                    ),
                    conn=conn,
                )
        return tuple(violations)


__all__ = [
    "CASCADE_AUDIT_EVENT",
    "ESCALATION_AUDIT_EVENT",
    "INVARIANT_VIOLATION_PHASE",
    "SettlementEngine",
    "SettlementError",
    "SettlementOutcome",
]
