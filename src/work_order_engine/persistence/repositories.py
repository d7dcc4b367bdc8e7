"""
work-order-engine — repositories

File: src/work_order_engine/persistence/repositories.py
Last updated: 2026-10-18

Purpose
- Repository/DAO layer for reading and writing engine entities to the state DB.

What should be included in this file
- WorkOrderRepo, AuditRepo, ExecutionLogRepo, TriageRepo, CorrelationRepo, QAFindingRepo,
  LessonRepo.
- Query patterns used by the gateway, the monitor detectors and the diagnostician.

Functional requirements
- Work order status only changes through ``WorkOrderRepo.apply_status_change`` (a single-row
  compare-and-set used by the transition gateway).
- Triage inserts are idempotent: at most one unresolved entry per (work order, triage type).
- Triage claims are atomic conditional updates with a lease.

Non-functional requirements
- Every method accepts an optional ``conn`` so callers can compose one transaction.
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Mapping, Sequence
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Final

from work_order_engine.domain import ids
from work_order_engine.domain.models import (
    AuditRecord,
    CorrelationGroup,
    ExecutionLogEntry,
    JSONValue,
    Lesson,
    QAFinding,
    TriageEntry,
    TriageState,
    TriageType,
    WorkOrder,
    WorkOrderStatus,
    datetime_to_iso8601z,
    diagnostic_context_from_dict,
    utc_now,
)
from work_order_engine.persistence.state_db import RowValue, StateDB, canonical_json

if TYPE_CHECKING:
    import sqlite3

_MAX_PAGE_SIZE: Final[int] = 1_000

_WORK_ORDER_COLUMNS: Final[str] = """
    id,
    slug,
    slug_number,
    name,
    status,
    priority,
    parent_id,
    depends_on_json,
    tags_json,
    source,
    claimed_by,
    execution_mode,
    created_at,
    updated_at,
    started_at,
    completed_at,
    payload_json
"""

_TRIAGE_COLUMNS: Final[str] = """
    id,
    work_order_id,
    triage_type,
    severity,
    state,
    escalate_to,
    diagnostic_context_json,
    claimed_by,
    claimed_at,
    notes,
    created_by,
    created_at,
    updated_at,
    resolved_at
"""


class _BaseRepo:
    def __init__(self, db: StateDB) -> None:
        self._db = db
        self._db.ensure_migrated()

    @staticmethod
    def _validate_page(limit: int, offset: int) -> None:
        if limit <= 0 or limit > _MAX_PAGE_SIZE:
            raise ValueError(f"limit must be in [1, {_MAX_PAGE_SIZE}]")
        if offset < 0:
            raise ValueError("offset must be >= 0")


class WorkOrderRepo(_BaseRepo):
    """Repository for work orders and their parent/child hierarchy."""

    def add(self, work_order: WorkOrder, *, conn: sqlite3.Connection | None = None) -> WorkOrder:
        number = ids.parse_slug_number(work_order.slug)
        self._db.execute(
            f"""
            INSERT INTO work_orders ({_WORK_ORDER_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (work_order.id, work_order.slug, number, *_work_order_row(work_order)),
            conn=conn,
        )
        return work_order

    def get(
        self, work_order_id: str, *, conn: sqlite3.Connection | None = None
    ) -> WorkOrder | None:
        row = self._db.query_one(
            "SELECT payload_json FROM work_orders WHERE id = ?",
            (work_order_id,),
            conn=conn,
        )
        if row is None:
            return None
        return WorkOrder.from_json(_row_text(row, "payload_json", "work_orders.payload_json"))

    def get_by_slug(
        self, slug: str, *, conn: sqlite3.Connection | None = None
    ) -> WorkOrder | None:
        row = self._db.query_one(
            "SELECT payload_json FROM work_orders WHERE slug = ?",
            (slug,),
            conn=conn,
        )
        if row is None:
            return None
        return WorkOrder.from_json(_row_text(row, "payload_json", "work_orders.payload_json"))

    def get_many(
        self, work_order_ids: Iterable[str], *, conn: sqlite3.Connection | None = None
    ) -> dict[str, WorkOrder]:
        wanted = sorted(set(work_order_ids))
        if not wanted:
            return {}
        placeholders = ",".join("?" for _ in wanted)
        rows = self._db.query_all(
            f"SELECT payload_json FROM work_orders WHERE id IN ({placeholders})",
            wanted,
            conn=conn,
        )
        loaded = (_work_order_from_row(row) for row in rows)
        return {item.id: item for item in loaded}

    def list(
        self,
        *,
        statuses: Sequence[WorkOrderStatus | str] | None = None,
        limit: int = 100,
        offset: int = 0,
        conn: sqlite3.Connection | None = None,
    ) -> list[WorkOrder]:
        self._validate_page(limit, offset)
        if statuses:
            values = [_as_status(status, "statuses").value for status in statuses]
            placeholders = ",".join("?" for _ in values)
            rows = self._db.query_all(
                f"""
                SELECT payload_json FROM work_orders
                WHERE status IN ({placeholders})
                ORDER BY slug_number ASC
                LIMIT ? OFFSET ?
                """,
                (*values, limit, offset),
                conn=conn,
            )
        else:
            rows = self._db.query_all(
                """
                SELECT payload_json FROM work_orders
                ORDER BY slug_number ASC
                LIMIT ? OFFSET ?
                """,
                (limit, offset),
                conn=conn,
            )
        return [_work_order_from_row(row) for row in rows]

    def list_all_by_status(
        self,
        statuses: Sequence[WorkOrderStatus | str],
        *,
        conn: sqlite3.Connection | None = None,
    ) -> list[WorkOrder]:
        """Unpaged scan used by the monitor sweep over active work orders."""

        values = [_as_status(status, "statuses").value for status in statuses]
        if not values:
            return []
        placeholders = ",".join("?" for _ in values)
        rows = self._db.query_all(
            f"""
            SELECT payload_json FROM work_orders
            WHERE status IN ({placeholders})
            ORDER BY slug_number ASC
            """,
            values,
            conn=conn,
        )
        return [_work_order_from_row(row) for row in rows]

    def list_children(
        self, parent_id: str, *, conn: sqlite3.Connection | None = None
    ) -> list[WorkOrder]:
        rows = self._db.query_all(
            """
            SELECT payload_json FROM work_orders
            WHERE parent_id = ?
            ORDER BY slug_number ASC
            """,
            (parent_id,),
            conn=conn,
        )
        return [_work_order_from_row(row) for row in rows]

    def next_slug(self, *, conn: sqlite3.Connection | None = None) -> str:
        row = self._db.query_one(
            "SELECT COALESCE(MAX(slug_number), 0) + 1 AS next_number FROM work_orders",
            conn=conn,
        )
        number = 1 if row is None else row["next_number"]
        if not isinstance(number, int):
            raise ValueError("work_orders.slug_number must be an integer")
        return ids.format_slug(number)

    def apply_status_change(
        self,
        work_order: WorkOrder,
        *,
        expected_status: WorkOrderStatus,
        conn: sqlite3.Connection,
    ) -> bool:
        """Compare-and-set write; only the transition gateway and settlement call this.

        Returns ``False`` when the stored status no longer equals ``expected_status``.
        """

        return self._write(work_order, expected_status=expected_status, conn=conn)

    def update_attributes(
        self, work_order: WorkOrder, *, conn: sqlite3.Connection | None = None
    ) -> bool:
        """Persist non-status fields; refuses to write if the stored status differs."""

        return self._write(work_order, expected_status=work_order.status, conn=conn)

    def _write(
        self,
        work_order: WorkOrder,
        *,
        expected_status: WorkOrderStatus,
        conn: sqlite3.Connection | None,
    ) -> bool:
        row = _work_order_row(work_order)
        updated = self._db.execute(
            """
            UPDATE work_orders SET
                name = ?,
                status = ?,
                priority = ?,
                parent_id = ?,
                depends_on_json = ?,
                tags_json = ?,
                source = ?,
                claimed_by = ?,
                execution_mode = ?,
                created_at = ?,
                updated_at = ?,
                started_at = ?,
                completed_at = ?,
                payload_json = ?
            WHERE id = ? AND status = ?
            """,
            (*row, work_order.id, expected_status.value),
            conn=conn,
        )
        return updated == 1


class AuditRepo(_BaseRepo):
    """Append-only audit trail."""

    def append(self, record: AuditRecord, *, conn: sqlite3.Connection | None = None) -> AuditRecord:
        self._db.execute(
            """
            INSERT INTO audit_log (
                id,
                work_order_id,
                event_type,
                actor,
                previous_status,
                new_status,
                payload_json,
                created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.id,
                record.work_order_id,
                record.event_type,
                record.actor,
                None if record.previous_status is None else record.previous_status.value,
                None if record.new_status is None else record.new_status.value,
                canonical_json(record.payload),
                datetime_to_iso8601z(record.created_at),
            ),
            conn=conn,
        )
        return record

    def list_for_work_order(
        self, work_order_id: str, *, conn: sqlite3.Connection | None = None
    ) -> list[AuditRecord]:
        rows = self._db.query_all(
            """
            SELECT * FROM audit_log
            WHERE work_order_id = ?
            ORDER BY created_at ASC, rowid ASC
            """,
            (work_order_id,),
            conn=conn,
        )
        return [_audit_from_row(row) for row in rows]

    def list_by_event_type(
        self, event_type: str, *, conn: sqlite3.Connection | None = None
    ) -> list[AuditRecord]:
        rows = self._db.query_all(
            """
            SELECT * FROM audit_log
            WHERE event_type = ?
            ORDER BY created_at ASC, rowid ASC
            """,
            (event_type,),
            conn=conn,
        )
        return [_audit_from_row(row) for row in rows]


class ExecutionLogRepo(_BaseRepo):
    """Append-only per-work-order execution log written by agents."""

    def append(
        self, entry: ExecutionLogEntry, *, conn: sqlite3.Connection | None = None
    ) -> ExecutionLogEntry:
        self._db.execute(
            """
            INSERT INTO execution_log (
                id,
                work_order_id,
                phase,
                tool_name,
                tool_names_json,
                success,
                detail_json,
                agent_name,
                created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry.id,
                entry.work_order_id,
                entry.phase,
                entry.tool_name,
                canonical_json(list(entry.tool_names)),
                None if entry.success is None else int(entry.success),
                canonical_json(entry.detail),
                entry.agent_name,
                datetime_to_iso8601z(entry.created_at),
            ),
            conn=conn,
        )
        return entry

    def list_for_work_order(
        self,
        work_order_id: str,
        *,
        limit: int = 50,
        descending: bool = True,
        phase: str | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> list[ExecutionLogEntry]:
        self._validate_page(limit, 0)
        order = "DESC" if descending else "ASC"
        phase_clause = "" if phase is None else "AND phase = ?"
        params: list[str | int] = [work_order_id]
        if phase is not None:
            params.append(phase)
        params.append(limit)
        rows = self._db.query_all(
            f"""
            SELECT * FROM execution_log
            WHERE work_order_id = ? {phase_clause}
            ORDER BY created_at {order}, rowid {order}
            LIMIT ?
            """,
            params,
            conn=conn,
        )
        return [_exec_log_from_row(row) for row in rows]

    def latest(
        self, work_order_id: str, *, conn: sqlite3.Connection | None = None
    ) -> ExecutionLogEntry | None:
        entries = self.list_for_work_order(work_order_id, limit=1, conn=conn)
        return entries[0] if entries else None


class TriageRepo(_BaseRepo):
    """Durable triage queue with explicit open/escalated/resolved state."""

    def add_if_absent(
        self, entry: TriageEntry, *, conn: sqlite3.Connection | None = None
    ) -> bool:
        """Insert unless an unresolved entry of the same type already exists."""

        inserted = self._db.execute(
            f"""
            INSERT INTO triage_queue ({_TRIAGE_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (work_order_id, triage_type) WHERE state <> 'resolved' DO NOTHING
            """,
            (
                entry.id,
                entry.work_order_id,
                entry.triage_type.value,
                entry.severity.value,
                entry.state.value,
                entry.escalate_to,
                canonical_json(entry.diagnostic_context.to_dict()),
                entry.claimed_by,
                _optional_iso(entry.claimed_at),
                entry.notes,
                entry.created_by,
                datetime_to_iso8601z(entry.created_at),
                datetime_to_iso8601z(entry.updated_at),
                _optional_iso(entry.resolved_at),
            ),
            conn=conn,
        )
        return inserted == 1

    def get(self, entry_id: str, *, conn: sqlite3.Connection | None = None) -> TriageEntry | None:
        row = self._db.query_one(
            f"SELECT {_TRIAGE_COLUMNS} FROM triage_queue WHERE id = ?",
            (entry_id,),
            conn=conn,
        )
        return None if row is None else _triage_from_row(row)

    def find_unresolved(
        self,
        work_order_id: str,
        triage_type: TriageType,
        *,
        conn: sqlite3.Connection | None = None,
    ) -> TriageEntry | None:
        row = self._db.query_one(
            f"""
            SELECT {_TRIAGE_COLUMNS} FROM triage_queue
            WHERE work_order_id = ? AND triage_type = ? AND state <> 'resolved'
            """,
            (work_order_id, triage_type.value),
            conn=conn,
        )
        return None if row is None else _triage_from_row(row)

    def list(
        self,
        *,
        states: Sequence[TriageState] | None = None,
        escalate_to: str | None = None,
        limit: int = 100,
        offset: int = 0,
        conn: sqlite3.Connection | None = None,
    ) -> list[TriageEntry]:
        self._validate_page(limit, offset)
        clauses: list[str] = []
        params: list[str | int] = []
        if states:
            clauses.append(f"state IN ({','.join('?' for _ in states)})")
            params.extend(state.value for state in states)
        if escalate_to is not None:
            clauses.append("escalate_to = ?")
            params.append(escalate_to)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._db.query_all(
            f"""
            SELECT {_TRIAGE_COLUMNS} FROM triage_queue
            {where}
            ORDER BY created_at ASC, id ASC
            LIMIT ? OFFSET ?
            """,
            (*params, limit, offset),
            conn=conn,
        )
        return [_triage_from_row(row) for row in rows]

    def list_unresolved(self, *, conn: sqlite3.Connection | None = None) -> list[TriageEntry]:
        rows = self._db.query_all(
            f"""
            SELECT {_TRIAGE_COLUMNS} FROM triage_queue
            WHERE state <> 'resolved'
            ORDER BY created_at ASC, id ASC
            """,
            conn=conn,
        )
        return [_triage_from_row(row) for row in rows]

    def escalate(
        self,
        entry_id: str,
        escalate_to: str,
        *,
        now: datetime | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> bool:
        """Route an unresolved entry to ``escalate_to``; returns False if nothing changed."""

        changed = self._db.execute(
            """
            UPDATE triage_queue
            SET escalate_to = ?, state = 'escalated', updated_at = ?
            WHERE id = ?
              AND state <> 'resolved'
              AND NOT (state = 'escalated' AND escalate_to IS ?)
            """,
            (escalate_to, datetime_to_iso8601z(now or utc_now()), entry_id, escalate_to),
            conn=conn,
        )
        return changed == 1

    def claim_batch(
        self,
        worker_id: str,
        *,
        escalate_to: str,
        limit: int,
        lease_seconds: int,
        now: datetime | None = None,
    ) -> list[TriageEntry]:
        """Atomically claim up to ``limit`` of the oldest unresolved entries for ``escalate_to``.

        One conditional UPDATE stamps ``claimed_by``/``claimed_at``; rows already claimed by a
        live lease are skipped, so concurrent workers never receive the same entry.
        """

        if limit <= 0:
            raise ValueError("limit must be > 0")
        claimed_at = now or utc_now()
        stamp = datetime_to_iso8601z(claimed_at)
        stale_before = datetime_to_iso8601z(claimed_at - timedelta(seconds=lease_seconds))
        with self._db.transaction() as conn:
            self._db.execute(
                """
                UPDATE triage_queue
                SET claimed_by = ?, claimed_at = ?, updated_at = ?
                WHERE id IN (
                    SELECT id FROM triage_queue
                    WHERE escalate_to = ?
                      AND state <> 'resolved'
                      AND (claimed_by IS NULL OR claimed_at < ?)
                    ORDER BY created_at ASC, id ASC
                    LIMIT ?
                )
                """,
                (worker_id, stamp, stamp, escalate_to, stale_before, limit),
                conn=conn,
            )
            rows = self._db.query_all(
                f"""
                SELECT {_TRIAGE_COLUMNS} FROM triage_queue
                WHERE claimed_by = ? AND claimed_at = ? AND state <> 'resolved'
                ORDER BY created_at ASC, id ASC
                """,
                (worker_id, stamp),
                conn=conn,
            )
        return [_triage_from_row(row) for row in rows]

    def resolve(
        self,
        entry_id: str,
        *,
        worker_id: str,
        notes: str,
        now: datetime | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> bool:
        stamp = datetime_to_iso8601z(now or utc_now())
        changed = self._db.execute(
            """
            UPDATE triage_queue
            SET state = 'resolved',
                resolved_at = ?,
                updated_at = ?,
                notes = ?,
                claimed_by = NULL,
                claimed_at = NULL
            WHERE id = ? AND claimed_by = ? AND state <> 'resolved'
            """,
            (stamp, stamp, notes, entry_id, worker_id),
            conn=conn,
        )
        return changed == 1

    def release(
        self,
        entry_id: str,
        *,
        worker_id: str,
        notes: str | None = None,
        now: datetime | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> bool:
        """Drop a claim without resolving, keeping the entry queued for the next invocation."""

        changed = self._db.execute(
            """
            UPDATE triage_queue
            SET claimed_by = NULL,
                claimed_at = NULL,
                notes = COALESCE(?, notes),
                updated_at = ?
            WHERE id = ? AND claimed_by = ?
            """,
            (notes, datetime_to_iso8601z(now or utc_now()), entry_id, worker_id),
            conn=conn,
        )
        return changed == 1


class CorrelationRepo(_BaseRepo):
    """Append-only forensic record of correlation groups found by sweeps."""

    def record(
        self,
        group: CorrelationGroup,
        *,
        created_by: str,
        now: datetime | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> str:
        correlation_id = ids.generate_correlation_id()
        self._db.execute(
            """
            INSERT INTO correlations (
                id,
                correlation_type,
                root_cause,
                work_order_ids_json,
                triage_entry_ids_json,
                created_by,
                created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                correlation_id,
                group.correlation_type,
                group.root_cause,
                canonical_json(list(group.work_order_ids)),
                canonical_json(list(group.triage_entry_ids)),
                created_by,
                datetime_to_iso8601z(now or utc_now()),
            ),
            conn=conn,
        )
        return correlation_id

    def count(self, *, conn: sqlite3.Connection | None = None) -> int:
        row = self._db.query_one("SELECT COUNT(*) AS total FROM correlations", conn=conn)
        total = 0 if row is None else row["total"]
        return total if isinstance(total, int) else 0


class QAFindingRepo(_BaseRepo):
    def add(self, finding: QAFinding, *, conn: sqlite3.Connection | None = None) -> QAFinding:
        self._db.execute(
            """
            INSERT INTO qa_findings (id, work_order_id, category, description, created_at, resolved_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                finding.id,
                finding.work_order_id,
                finding.category,
                finding.description,
                datetime_to_iso8601z(finding.created_at),
                _optional_iso(finding.resolved_at),
            ),
            conn=conn,
        )
        return finding

    def list_open(
        self, work_order_id: str, *, conn: sqlite3.Connection | None = None
    ) -> list[QAFinding]:
        rows = self._db.query_all(
            """
            SELECT * FROM qa_findings
            WHERE work_order_id = ? AND resolved_at IS NULL
            ORDER BY created_at ASC, id ASC
            """,
            (work_order_id,),
            conn=conn,
        )
        return [
            QAFinding(
                id=_row_text(row, "id", "qa_findings.id"),
                work_order_id=_row_text(row, "work_order_id", "qa_findings.work_order_id"),
                category=_row_text(row, "category", "qa_findings.category"),
                description=_row_text(row, "description", "qa_findings.description"),
                created_at=_row_text(row, "created_at", "qa_findings.created_at"),
                resolved_at=None,
            )
            for row in rows
        ]


class LessonRepo(_BaseRepo):
    def add(self, lesson: Lesson, *, conn: sqlite3.Connection | None = None) -> Lesson:
        self._db.execute(
            """
            INSERT INTO lessons (id, category, pattern, rule, promoted, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                lesson.id,
                lesson.category,
                lesson.pattern,
                lesson.rule,
                int(lesson.promoted),
                datetime_to_iso8601z(lesson.created_at),
            ),
            conn=conn,
        )
        return lesson

    def list_promoted(
        self,
        categories: Sequence[str],
        *,
        limit: int = 10,
        conn: sqlite3.Connection | None = None,
    ) -> list[Lesson]:
        self._validate_page(limit, 0)
        wanted = sorted(set(categories))
        if not wanted:
            return []
        placeholders = ",".join("?" for _ in wanted)
        rows = self._db.query_all(
            f"""
            SELECT * FROM lessons
            WHERE promoted = 1 AND category IN ({placeholders})
            ORDER BY created_at DESC, id ASC
            LIMIT ?
            """,
            (*wanted, limit),
            conn=conn,
        )
        return [
            Lesson(
                id=_row_text(row, "id", "lessons.id"),
                category=_row_text(row, "category", "lessons.category"),
                pattern=_row_text(row, "pattern", "lessons.pattern"),
                rule=_row_text(row, "rule", "lessons.rule"),
                promoted=True,
                created_at=_row_text(row, "created_at", "lessons.created_at"),
            )
            for row in rows
        ]


def _work_order_row(work_order: WorkOrder) -> tuple[str | None, ...]:
    """Column values after ``id``/``slug``/``slug_number``, in ``_WORK_ORDER_COLUMNS`` order."""

    return (
        work_order.name,
        work_order.status.value,
        work_order.priority.value,
        work_order.parent_id,
        canonical_json(list(work_order.depends_on)),
        canonical_json(list(work_order.tags)),
        work_order.source,
        work_order.claimed_by,
        work_order.execution_mode,
        datetime_to_iso8601z(work_order.created_at),
        datetime_to_iso8601z(work_order.updated_at),
        _optional_iso(work_order.started_at),
        _optional_iso(work_order.completed_at),
        work_order.to_json(),
    )


def _work_order_from_row(row: Mapping[str, RowValue]) -> WorkOrder:
    return WorkOrder.from_json(_row_text(row, "payload_json", "work_orders.payload_json"))


def _audit_from_row(row: Mapping[str, RowValue]) -> AuditRecord:
    previous = row.get("previous_status")
    new = row.get("new_status")
    return AuditRecord(
        id=_row_text(row, "id", "audit_log.id"),
        work_order_id=_row_text(row, "work_order_id", "audit_log.work_order_id"),
        event_type=_row_text(row, "event_type", "audit_log.event_type"),
        actor=_row_text(row, "actor", "audit_log.actor"),
        previous_status=None if previous is None else WorkOrderStatus(str(previous)),
        new_status=None if new is None else WorkOrderStatus(str(new)),
        payload=_load_json_object(
            _row_text(row, "payload_json", "audit_log.payload_json"), "audit_log.payload_json"
        ),
        created_at=_row_text(row, "created_at", "audit_log.created_at"),
    )


def _exec_log_from_row(row: Mapping[str, RowValue]) -> ExecutionLogEntry:
    tool_names = json.loads(_row_text(row, "tool_names_json", "execution_log.tool_names_json"))
    success = row.get("success")
    return ExecutionLogEntry(
        id=_row_text(row, "id", "execution_log.id"),
        work_order_id=_row_text(row, "work_order_id", "execution_log.work_order_id"),
        phase=_row_text(row, "phase", "execution_log.phase"),
        tool_name=_row_optional_text(row, "tool_name"),
        tool_names=tuple(tool_names) if isinstance(tool_names, list) else (),
        success=None if success is None else bool(success),
        detail=_load_json_object(
            _row_text(row, "detail_json", "execution_log.detail_json"),
            "execution_log.detail_json",
        ),
        agent_name=_row_optional_text(row, "agent_name"),
        created_at=_row_text(row, "created_at", "execution_log.created_at"),
    )


def _triage_from_row(row: Mapping[str, RowValue]) -> TriageEntry:
    context = _load_json_object(
        _row_text(row, "diagnostic_context_json", "triage_queue.diagnostic_context_json"),
        "triage_queue.diagnostic_context_json",
    )
    return TriageEntry(
        id=_row_text(row, "id", "triage_queue.id"),
        work_order_id=_row_text(row, "work_order_id", "triage_queue.work_order_id"),
        triage_type=TriageType(_row_text(row, "triage_type", "triage_queue.triage_type")),
        severity=_row_text(row, "severity", "triage_queue.severity"),
        diagnostic_context=diagnostic_context_from_dict(context),
        state=TriageState(_row_text(row, "state", "triage_queue.state")),
        escalate_to=_row_optional_text(row, "escalate_to"),
        claimed_by=_row_optional_text(row, "claimed_by"),
        claimed_at=_row_optional_text(row, "claimed_at"),
        notes=_row_optional_text(row, "notes"),
        created_by=_row_text(row, "created_by", "triage_queue.created_by"),
        created_at=_row_text(row, "created_at", "triage_queue.created_at"),
        updated_at=_row_text(row, "updated_at", "triage_queue.updated_at"),
        resolved_at=_row_optional_text(row, "resolved_at"),
    )


def _row_text(row: Mapping[str, RowValue], key: str, path: str) -> str:
    value = row.get(key)
    if not isinstance(value, str):
        raise ValueError(f"{path}: expected text column")
    return value


def _row_optional_text(row: Mapping[str, RowValue], key: str) -> str | None:
    value = row.get(key)
    return value if isinstance(value, str) else None


def _load_json_object(payload: str, path: str) -> dict[str, JSONValue]:
    try:
        parsed = json.loads(payload)
    except json.JSONDecodeError as exc:
        raise ValueError(f"{path}: invalid JSON payload ({exc})") from exc
    if not isinstance(parsed, dict):
        raise ValueError(f"{path}: JSON payload must be an object")
    return parsed


def _optional_iso(value: datetime | None) -> str | None:
    return None if value is None else datetime_to_iso8601z(value)


def _as_status(value: WorkOrderStatus | str, path: str) -> WorkOrderStatus:
    if isinstance(value, WorkOrderStatus):
        return value
    try:
        return WorkOrderStatus(value)
    except ValueError as exc:
        allowed = ", ".join(item.value for item in WorkOrderStatus)
        raise ValueError(f"{path}: invalid work order status {value!r}; expected {allowed}") from exc


__all__ = [
    "AuditRepo",
    "CorrelationRepo",
    "ExecutionLogRepo",
    "LessonRepo",
    "QAFindingRepo",
    "TriageRepo",
    "WorkOrderRepo",
]
