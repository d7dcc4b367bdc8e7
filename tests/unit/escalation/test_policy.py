"""Unit tests for triage escalation and diagnose dispatch."""

from __future__ import annotations

from dataclasses import replace
from typing import TYPE_CHECKING

import pytest

from work_order_engine.constants import DIAGNOSE_TOPIC, ESCALATE_TO_DIAGNOSTICIAN
from work_order_engine.domain import ids
from work_order_engine.domain.models import (
    CorrelationGroup,
    OrphanContext,
    Severity,
    TriageEntry,
    TriageState,
    TriageType,
    WorkOrderStatus,
)
from work_order_engine.escalation.policy import (
    ESCALATION_AUDIT_EVENT,
    EscalationPolicy,
)
from work_order_engine.escalation.task_queue import TaskQueue
from work_order_engine.persistence.repositories import AuditRepo, TriageRepo
from work_order_engine.persistence.state_db import StateDBBusyError

from .. import fixed_now, make_db, seed_escalated_entry, seed_work_order

if TYPE_CHECKING:
    from pathlib import Path

    from work_order_engine.persistence.state_db import StateDB


def _open_entry(db: StateDB, *, severity: Severity = Severity.MEDIUM) -> TriageEntry:
    work_order = seed_work_order(db, status=WorkOrderStatus.READY)
    entry = TriageEntry(
        id=ids.generate_triage_id(),
        work_order_id=work_order.id,
        triage_type=TriageType.ORPHAN,
        severity=severity,
        diagnostic_context=OrphanContext(idle_minutes=20),
        created_at=fixed_now(),
        updated_at=fixed_now(),
    )
    assert TriageRepo(db).add_if_absent(entry)
    return entry


def _group(*entries: TriageEntry) -> CorrelationGroup:
    return CorrelationGroup(
        correlation_type="api_rate_limit",
        work_order_ids=tuple(entry.work_order_id for entry in entries),
        root_cause="API rate limit exceeded across multiple work orders",
        triage_entry_ids=tuple(entry.id for entry in entries),
    )


def test_critical_entry_is_escalated_and_dispatched(tmp_path: Path) -> None:
    db = make_db(tmp_path)
    queue = TaskQueue(db)
    critical = _open_entry(db, severity=Severity.CRITICAL)
    routine = _open_entry(db)

    outcome = EscalationPolicy(db, queue).apply([critical, routine], now=fixed_now(1))

    assert outcome.escalated_ids == (critical.id,)
    assert outcome.dispatched_task_id is not None
    stored = TriageRepo(db).get(critical.id)
    assert stored is not None
    assert stored.state is TriageState.ESCALATED
    assert stored.escalate_to == ESCALATE_TO_DIAGNOSTICIAN
    untouched = TriageRepo(db).get(routine.id)
    assert untouched is not None
    assert untouched.state is TriageState.OPEN
    audit = AuditRepo(db).list_by_event_type(ESCALATION_AUDIT_EVENT)
    assert [record.payload["reason"] for record in audit] == ["critical_severity"]


def test_correlation_group_at_threshold_escalates_members(tmp_path: Path) -> None:
    db = make_db(tmp_path)
    queue = TaskQueue(db)
    members = [_open_entry(db) for _ in range(3)]
    outsider = _open_entry(db)

    outcome = EscalationPolicy(db, queue, correlation_threshold=3).apply(
        [*members, outsider], [_group(*members)], now=fixed_now(1)
    )

    assert set(outcome.escalated_ids) == {entry.id for entry in members}
    reasons = {
        record.payload["reason"] for record in AuditRepo(db).list_by_event_type(ESCALATION_AUDIT_EVENT)
    }
    assert reasons == {"correlation:api_rate_limit"}


def test_group_below_threshold_is_ignored(tmp_path: Path) -> None:
    db = make_db(tmp_path)
    queue = TaskQueue(db)
    members = [_open_entry(db) for _ in range(2)]

    outcome = EscalationPolicy(db, queue).apply(members, [_group(*members)])

    assert outcome.escalated_ids == ()
    assert outcome.dispatched_task_id is None
    assert queue.outstanding(DIAGNOSE_TOPIC) == 0


def test_dispatch_is_deduplicated_while_a_task_is_outstanding(tmp_path: Path) -> None:
    db = make_db(tmp_path)
    queue = TaskQueue(db)
    policy = EscalationPolicy(db, queue)

    first = policy.apply([_open_entry(db, severity=Severity.CRITICAL)], now=fixed_now(1))
    second = policy.apply([_open_entry(db, severity=Severity.CRITICAL)], now=fixed_now(2))

    assert first.dispatched_task_id is not None
    assert len(second.escalated_ids) == 1
    assert second.dispatched_task_id is None
    assert queue.outstanding(DIAGNOSE_TOPIC) == 1


def test_backlog_triggers_dispatch_without_new_escalations(tmp_path: Path) -> None:
    db = make_db(tmp_path)
    queue = TaskQueue(db)
    seed_escalated_entry(db, seed_work_order(db, status=WorkOrderStatus.IN_PROGRESS))

    outcome = EscalationPolicy(db, queue, max_attempts=2).apply([], now=fixed_now(1))

    assert outcome.escalated_ids == ()
    assert outcome.dispatched_task_id is not None
    message = queue.get(outcome.dispatched_task_id)
    assert message is not None
    assert message.max_attempts == 2
    assert message.payload["escalated_count"] == 0


def test_resolved_entries_are_never_escalated(tmp_path: Path) -> None:
    db = make_db(tmp_path)
    queue = TaskQueue(db)
    entry = _open_entry(db, severity=Severity.CRITICAL)
    resolved = replace(entry, state=TriageState.RESOLVED, resolved_at=fixed_now(1))

    outcome = EscalationPolicy(db, queue).apply([resolved])

    assert outcome.escalated_ids == ()


def test_locked_entry_does_not_block_the_others(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    db = make_db(tmp_path)
    locked = _open_entry(db, severity=Severity.CRITICAL)
    healthy = _open_entry(db, severity=Severity.CRITICAL)
    original = TriageRepo.escalate

    def _escalate(self: TriageRepo, entry_id: str, *args: object, **kwargs: object) -> bool:
        if entry_id == locked.id:
            raise StateDBBusyError("database is locked")
        return original(self, entry_id, *args, **kwargs)  # type: ignore[arg-type]

    monkeypatch.setattr(TriageRepo, "escalate", _escalate)

    outcome = EscalationPolicy(db, TaskQueue(db)).apply([locked, healthy], now=fixed_now(1))

    assert outcome.escalated_ids == (healthy.id,)
    assert outcome.dispatched_task_id is not None
    stored = TriageRepo(db).get(locked.id)
    assert stored is not None
    assert stored.state is TriageState.OPEN
    assert len(AuditRepo(db).list_by_event_type(ESCALATION_AUDIT_EVENT)) == 1


def test_threshold_must_be_positive(tmp_path: Path) -> None:
    db = make_db(tmp_path)

    with pytest.raises(ValueError, match="correlation_threshold"):
        EscalationPolicy(db, TaskQueue(db), correlation_threshold=0)
