"""Unit tests for repository behavior: slugs, hierarchy, triage claims and idempotency."""

from __future__ import annotations

from dataclasses import replace
from datetime import timedelta
from typing import TYPE_CHECKING

import pytest

from work_order_engine.constants import ESCALATE_TO_DIAGNOSTICIAN, ESCALATE_TO_OPS
from work_order_engine.domain import ids
from work_order_engine.domain.models import (
    CorrelationGroup,
    Lesson,
    OrphanContext,
    QAFinding,
    Severity,
    TriageEntry,
    TriageState,
    TriageType,
    WorkOrderStatus,
)
from work_order_engine.persistence.repositories import (
    CorrelationRepo,
    ExecutionLogRepo,
    LessonRepo,
    QAFindingRepo,
    TriageRepo,
    WorkOrderRepo,
)

from .. import (
    BASE_TS,
    append_log,
    fixed_now,
    make_db,
    seed_escalated_entry,
    seed_work_order,
)

if TYPE_CHECKING:
    from pathlib import Path


def _orphan_entry(work_order_id: str, *, minutes: float = 0) -> TriageEntry:
    at = fixed_now(minutes)
    return TriageEntry(
        id=ids.generate_triage_id(),
        work_order_id=work_order_id,
        triage_type=TriageType.ORPHAN,
        severity=Severity.MEDIUM,
        diagnostic_context=OrphanContext(idle_minutes=75),
        created_at=at,
        updated_at=at,
    )


def test_next_slug_is_sequential(tmp_path: Path) -> None:
    db = make_db(tmp_path)
    repo = WorkOrderRepo(db)

    assert repo.next_slug() == "WO-0001"
    seed_work_order(db)
    seed_work_order(db)
    assert repo.next_slug() == "WO-0003"


def test_get_by_slug_and_get_many(tmp_path: Path) -> None:
    db = make_db(tmp_path)
    repo = WorkOrderRepo(db)
    first = seed_work_order(db, name="first")
    second = seed_work_order(db, name="second")

    by_slug = repo.get_by_slug("WO-0002")
    loaded = repo.get_many([first.id, second.id, "wo-missing"])

    assert by_slug == second
    assert set(loaded) == {first.id, second.id}
    assert repo.get("wo-missing") is None


def test_list_filters_by_status_in_slug_order(tmp_path: Path) -> None:
    db = make_db(tmp_path)
    repo = WorkOrderRepo(db)
    seed_work_order(db, name="a", status=WorkOrderStatus.READY)
    seed_work_order(db, name="b", status=WorkOrderStatus.DONE)
    seed_work_order(db, name="c", status=WorkOrderStatus.READY)

    ready = repo.list(statuses=[WorkOrderStatus.READY])
    page = repo.list(limit=1, offset=1)

    assert [item.name for item in ready] == ["a", "c"]
    assert [item.name for item in page] == ["b"]
    with pytest.raises(ValueError, match="limit"):
        repo.list(limit=0)


def test_list_children(tmp_path: Path) -> None:
    db = make_db(tmp_path)
    parent = seed_work_order(db, name="parent")
    seed_work_order(db, name="child-1", parent_id=parent.id)
    seed_work_order(db, name="child-2", parent_id=parent.id)
    seed_work_order(db, name="unrelated")

    children = WorkOrderRepo(db).list_children(parent.id)

    assert [child.name for child in children] == ["child-1", "child-2"]


def test_apply_status_change_is_compare_and_set(tmp_path: Path) -> None:
    db = make_db(tmp_path)
    repo = WorkOrderRepo(db)
    work_order = seed_work_order(db, status=WorkOrderStatus.READY)
    started = replace(work_order, status=WorkOrderStatus.IN_PROGRESS)

    with db.transaction() as conn:
        assert repo.apply_status_change(
            started, expected_status=WorkOrderStatus.READY, conn=conn
        )
    with db.transaction() as conn:
        assert not repo.apply_status_change(
            replace(work_order, status=WorkOrderStatus.BLOCKED),
            expected_status=WorkOrderStatus.READY,
            conn=conn,
        )

    stored = repo.get(work_order.id)
    assert stored is not None
    assert stored.status is WorkOrderStatus.IN_PROGRESS


def test_execution_log_ordering_and_phase_filter(tmp_path: Path) -> None:
    db = make_db(tmp_path)
    work_order = seed_work_order(db)
    append_log(db, work_order.id, phase="stream", created_at=fixed_now(1))
    append_log(db, work_order.id, phase="checkpoint", created_at=fixed_now(2))
    append_log(db, work_order.id, phase="stream", created_at=fixed_now(3))
    repo = ExecutionLogRepo(db)

    newest_first = repo.list_for_work_order(work_order.id)
    streams = repo.list_for_work_order(work_order.id, phase="stream", descending=False)
    latest = repo.latest(work_order.id)

    assert [entry.created_at for entry in newest_first] == [fixed_now(3), fixed_now(2), fixed_now(1)]
    assert [entry.created_at for entry in streams] == [fixed_now(1), fixed_now(3)]
    assert latest is not None
    assert latest.created_at == fixed_now(3)


def test_add_if_absent_keeps_one_unresolved_entry_per_type(tmp_path: Path) -> None:
    db = make_db(tmp_path)
    repo = TriageRepo(db)
    work_order = seed_work_order(db, status=WorkOrderStatus.READY)

    assert repo.add_if_absent(_orphan_entry(work_order.id))
    assert not repo.add_if_absent(_orphan_entry(work_order.id, minutes=5))
    assert len(repo.list_unresolved()) == 1


def test_resolved_entry_allows_a_new_finding(tmp_path: Path) -> None:
    db = make_db(tmp_path)
    repo = TriageRepo(db)
    work_order = seed_work_order(db, status=WorkOrderStatus.IN_PROGRESS)
    entry = seed_escalated_entry(db, work_order)

    claimed = repo.claim_batch(
        "worker-a",
        escalate_to=ESCALATE_TO_DIAGNOSTICIAN,
        limit=5,
        lease_seconds=600,
        now=fixed_now(1),
    )
    assert [item.id for item in claimed] == [entry.id]
    assert repo.resolve(entry.id, worker_id="worker-a", notes="done", now=fixed_now(2))

    resolved = repo.get(entry.id)
    assert resolved is not None
    assert resolved.state is TriageState.RESOLVED
    assert resolved.resolved_at == fixed_now(2)
    assert resolved.claimed_by is None
    assert repo.find_unresolved(work_order.id, TriageType.STUCK) is None
    seed_escalated_entry(db, work_order, created_at=fixed_now(3))
    assert repo.find_unresolved(work_order.id, TriageType.STUCK) is not None


def test_claim_batch_never_hands_out_the_same_entry_twice(tmp_path: Path) -> None:
    db = make_db(tmp_path)
    repo = TriageRepo(db)
    entries = [
        seed_escalated_entry(
            db,
            seed_work_order(db, status=WorkOrderStatus.IN_PROGRESS),
            created_at=fixed_now(index),
        )
        for index in range(5)
    ]

    first = repo.claim_batch(
        "worker-a",
        escalate_to=ESCALATE_TO_DIAGNOSTICIAN,
        limit=3,
        lease_seconds=600,
        now=fixed_now(10),
    )
    second = repo.claim_batch(
        "worker-b",
        escalate_to=ESCALATE_TO_DIAGNOSTICIAN,
        limit=3,
        lease_seconds=600,
        now=fixed_now(10) + timedelta(seconds=1),
    )

    assert [item.id for item in first] == [entry.id for entry in entries[:3]]
    assert [item.id for item in second] == [entry.id for entry in entries[3:]]
    assert all(item.claimed_by == "worker-a" for item in first)


def test_claim_batch_reclaims_expired_lease(tmp_path: Path) -> None:
    db = make_db(tmp_path)
    repo = TriageRepo(db)
    entry = seed_escalated_entry(db, seed_work_order(db, status=WorkOrderStatus.IN_PROGRESS))

    repo.claim_batch(
        "worker-a",
        escalate_to=ESCALATE_TO_DIAGNOSTICIAN,
        limit=1,
        lease_seconds=60,
        now=fixed_now(0),
    )
    blocked = repo.claim_batch(
        "worker-b",
        escalate_to=ESCALATE_TO_DIAGNOSTICIAN,
        limit=1,
        lease_seconds=60,
        now=fixed_now(0.5),
    )
    reclaimed = repo.claim_batch(
        "worker-b",
        escalate_to=ESCALATE_TO_DIAGNOSTICIAN,
        limit=1,
        lease_seconds=60,
        now=fixed_now(5),
    )

    assert blocked == []
    assert [item.id for item in reclaimed] == [entry.id]
    assert not repo.resolve(entry.id, worker_id="worker-a", notes="late", now=fixed_now(6))


def test_release_keeps_entry_queued(tmp_path: Path) -> None:
    db = make_db(tmp_path)
    repo = TriageRepo(db)
    entry = seed_escalated_entry(db, seed_work_order(db, status=WorkOrderStatus.IN_PROGRESS))
    repo.claim_batch(
        "worker-a",
        escalate_to=ESCALATE_TO_DIAGNOSTICIAN,
        limit=1,
        lease_seconds=600,
        now=fixed_now(1),
    )

    assert repo.release(entry.id, worker_id="worker-a", notes="collaborator timeout")

    released = repo.get(entry.id)
    assert released is not None
    assert released.claimed_by is None
    assert released.state is TriageState.ESCALATED
    assert released.notes == "collaborator timeout"


def test_escalate_routes_open_entry_once(tmp_path: Path) -> None:
    db = make_db(tmp_path)
    repo = TriageRepo(db)
    work_order = seed_work_order(db, status=WorkOrderStatus.READY)
    entry = _orphan_entry(work_order.id)
    repo.add_if_absent(entry)

    assert repo.escalate(entry.id, ESCALATE_TO_OPS, now=fixed_now(1))
    assert not repo.escalate(entry.id, ESCALATE_TO_OPS, now=fixed_now(2))
    assert repo.escalate(entry.id, ESCALATE_TO_DIAGNOSTICIAN, now=fixed_now(3))
    routed = repo.list(escalate_to=ESCALATE_TO_DIAGNOSTICIAN)
    assert [item.id for item in routed] == [entry.id]
    assert routed[0].state is TriageState.ESCALATED


def test_correlation_repo_records_groups(tmp_path: Path) -> None:
    db = make_db(tmp_path)
    repo = CorrelationRepo(db)
    orders = [seed_work_order(db) for _ in range(3)]

    correlation_id = repo.record(
        CorrelationGroup(
            correlation_type="api_rate_limit",
            work_order_ids=tuple(item.id for item in orders),
            root_cause="Upstream API rate limiting",
        ),
        created_by="tester",
        now=BASE_TS,
    )

    assert correlation_id.startswith("cor-")
    assert repo.count() == 1


def test_qa_findings_and_promoted_lessons(tmp_path: Path) -> None:
    db = make_db(tmp_path)
    work_order = seed_work_order(db)
    QAFindingRepo(db).add(
        QAFinding(
            id=ids.generate_qa_finding_id(),
            work_order_id=work_order.id,
            category="tests",
            description="Missing regression test for retry path",
            created_at=BASE_TS,
        )
    )
    lessons = LessonRepo(db)
    lessons.add(
        Lesson(
            id=ids.generate_lesson_id(),
            category="execution",
            pattern="Long-running migrations",
            rule="Split migrations into batches",
            promoted=True,
            created_at=fixed_now(1),
        )
    )
    lessons.add(
        Lesson(
            id=ids.generate_lesson_id(),
            category="execution",
            pattern="Draft lesson",
            rule="Not yet reviewed",
            created_at=fixed_now(2),
        )
    )

    findings = QAFindingRepo(db).list_open(work_order.id)
    promoted = lessons.list_promoted(["execution", "scope_creep"])

    assert [finding.category for finding in findings] == ["tests"]
    assert [lesson.pattern for lesson in promoted] == ["Long-running migrations"]
