"""
work-order-engine — settlement tests

File: tests/unit/lifecycle/test_settlement.py
Last updated: 2026-10-18

Purpose
- Validate downward cancellation cascades and upward failure escalation.

What this test file should cover
- Cascade on done/cancelled, including grandchildren and already-terminal subtrees.
- Escalation only when every sibling has failed, recursively.
- Idempotent re-settlement and the no-active-descendant property under random event sequences.
"""

from __future__ import annotations

import hashlib
from typing import TYPE_CHECKING

import pytest
from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from work_order_engine.constants import SETTLEMENT_ACTOR
from work_order_engine.domain.models import (
    TERMINAL_STATUSES,
    TriageState,
    TriageType,
    WorkOrderStatus,
)
from work_order_engine.lifecycle.settlement import (
    CASCADE_AUDIT_EVENT,
    ESCALATION_AUDIT_EVENT,
    SettlementEngine,
)
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
from work_order_engine.persistence.state_db import StateDB

from .. import fixed_now, make_db, reload, seed_hierarchy, seed_work_order

if TYPE_CHECKING:
    from pathlib import Path


def test_done_parent_cancels_every_active_child(tmp_path: Path) -> None:
    db = make_db(tmp_path)
    parent, children = seed_hierarchy(db, children=3)

    result = TransitionGateway(db).transition(
        parent.id, TransitionEvent.MARK_DONE, now=fixed_now(5)
    )

    assert set(result.effects.cancelled_descendants) == {child.id for child in children}
    for child in children:
        stored = reload(db, child)
        assert stored.status is WorkOrderStatus.CANCELLED
        assert stored.completed_at == fixed_now(5)
        assert stored.cancellation_reason == f"Parent {parent.slug} completed with status: done"
        assert stored.summary is not None
        assert f"parent {parent.slug} reached done" in stored.summary

    cascade_audits = AuditRepo(db).list_by_event_type(CASCADE_AUDIT_EVENT)
    assert len(cascade_audits) >= 3
    assert {record.work_order_id for record in cascade_audits} == {child.id for child in children}
    assert all(record.actor == SETTLEMENT_ACTOR for record in cascade_audits)

    marker = ExecutionLogRepo(db).latest(parent.id)
    assert marker is not None
    assert marker.detail["event_type"] == "lifecycle_settlement"
    assert marker.detail["cancelled_count"] == 3


def test_cascade_reaches_grandchildren(tmp_path: Path) -> None:
    db = make_db(tmp_path)
    root = seed_work_order(db, name="root", status=WorkOrderStatus.IN_PROGRESS)
    child = seed_work_order(
        db, name="child", status=WorkOrderStatus.IN_PROGRESS, parent_id=root.id
    )
    grandchild = seed_work_order(
        db, name="grandchild", status=WorkOrderStatus.READY, parent_id=child.id
    )

    result = TransitionGateway(db).transition(root.id, TransitionEvent.CANCEL)

    assert result.effects.cancelled_descendants == (child.id, grandchild.id)
    assert reload(db, child).status is WorkOrderStatus.CANCELLED
    assert reload(db, grandchild).status is WorkOrderStatus.CANCELLED
    grandchild_audit = AuditRepo(db).list_for_work_order(grandchild.id)
    assert grandchild_audit[0].payload["parent_slug"] == child.slug
    assert grandchild_audit[0].payload["root_slug"] == root.slug


def test_cascade_descends_through_already_terminal_children(tmp_path: Path) -> None:
    db = make_db(tmp_path)
    root = seed_work_order(db, status=WorkOrderStatus.IN_PROGRESS)
    finished = seed_work_order(db, status=WorkOrderStatus.DONE, parent_id=root.id)
    orphaned = seed_work_order(db, status=WorkOrderStatus.BLOCKED, parent_id=finished.id)

    result = TransitionGateway(db).transition(root.id, TransitionEvent.MARK_DONE)

    assert result.effects.cancelled_descendants == (orphaned.id,)
    assert reload(db, finished).status is WorkOrderStatus.DONE
    assert reload(db, orphaned).status is WorkOrderStatus.CANCELLED


def test_failed_child_does_not_fail_parent_while_siblings_remain(tmp_path: Path) -> None:
    db = make_db(tmp_path)
    parent, children = seed_hierarchy(db, children=2)
    gateway = TransitionGateway(db)

    first = gateway.transition(children[0].id, TransitionEvent.MARK_FAILED)

    assert first.effects.failed_ancestors == ()
    assert reload(db, parent).status is WorkOrderStatus.IN_PROGRESS


def test_parent_fails_when_all_children_fail(tmp_path: Path) -> None:
    db = make_db(tmp_path)
    parent, children = seed_hierarchy(db, children=2)
    gateway = TransitionGateway(db)

    gateway.transition(children[0].id, TransitionEvent.MARK_FAILED, now=fixed_now(1))
    last = gateway.transition(children[1].id, TransitionEvent.MARK_FAILED, now=fixed_now(2))

    stored = reload(db, parent)
    assert last.effects.failed_ancestors == (parent.id,)
    assert stored.status is WorkOrderStatus.FAILED
    assert stored.summary == "All 2 remediation attempts exhausted. Review required."
    assert stored.completed_at == fixed_now(2)
    escalations = AuditRepo(db).list_by_event_type(ESCALATION_AUDIT_EVENT)
    assert [record.work_order_id for record in escalations] == [parent.id]
    assert escalations[0].payload["child_count"] == 2
    marker = ExecutionLogRepo(db).latest(parent.id)
    assert marker is not None
    assert marker.phase == "failed"
    assert marker.success is False


def test_mixed_terminal_children_do_not_escalate(tmp_path: Path) -> None:
    db = make_db(tmp_path)
    parent, children = seed_hierarchy(db, children=2)
    gateway = TransitionGateway(db)

    gateway.transition(children[0].id, TransitionEvent.CANCEL)
    gateway.transition(children[1].id, TransitionEvent.MARK_FAILED)

    assert reload(db, parent).status is WorkOrderStatus.IN_PROGRESS


def test_failure_escalation_is_recursive(tmp_path: Path) -> None:
    db = make_db(tmp_path)
    root = seed_work_order(db, name="R", status=WorkOrderStatus.IN_PROGRESS)
    child = seed_work_order(db, name="C", status=WorkOrderStatus.IN_PROGRESS, parent_id=root.id)
    grandchild = seed_work_order(
        db, name="G", status=WorkOrderStatus.IN_PROGRESS, parent_id=child.id
    )

    result = TransitionGateway(db).transition(grandchild.id, TransitionEvent.MARK_FAILED)

    assert result.effects.failed_ancestors == (child.id, root.id)
    assert reload(db, child).status is WorkOrderStatus.FAILED
    assert reload(db, root).status is WorkOrderStatus.FAILED


def test_escalation_stops_at_terminal_parent(tmp_path: Path) -> None:
    db = make_db(tmp_path)
    parent = seed_work_order(db, status=WorkOrderStatus.CANCELLED)
    child = seed_work_order(db, status=WorkOrderStatus.IN_PROGRESS, parent_id=parent.id)

    result = TransitionGateway(db).transition(child.id, TransitionEvent.MARK_FAILED)

    assert result.effects.failed_ancestors == ()
    assert reload(db, parent).status is WorkOrderStatus.CANCELLED


def test_settle_is_idempotent(tmp_path: Path) -> None:
    db = make_db(tmp_path)
    parent, _ = seed_hierarchy(db, children=2)
    TransitionGateway(db).transition(parent.id, TransitionEvent.MARK_DONE)
    audit_count = len(AuditRepo(db).list_by_event_type(CASCADE_AUDIT_EVENT))

    outcome = SettlementEngine(db).settle(parent.id)

    assert not outcome.changed
    assert len(AuditRepo(db).list_by_event_type(CASCADE_AUDIT_EVENT)) == audit_count


def test_settle_resumes_a_partially_settled_tree(tmp_path: Path) -> None:
    db = make_db(tmp_path)
    parent, children = seed_hierarchy(
        db, children=2, parent_status=WorkOrderStatus.DONE
    )

    outcome = SettlementEngine(db).settle(parent.id, now=fixed_now(9))

    assert set(outcome.cancelled_descendants) == {child.id for child in children}
    assert all(reload(db, child).status is WorkOrderStatus.CANCELLED for child in children)


def test_settle_non_terminal_is_noop_and_missing_raises(tmp_path: Path) -> None:
    db = make_db(tmp_path)
    active = seed_work_order(db, status=WorkOrderStatus.IN_PROGRESS)
    engine = SettlementEngine(db)

    assert engine.settle(active.id) == engine.settle(active.id)
    assert not engine.settle(active.id).changed
    with pytest.raises(KeyError):
        engine.settle("wo-missing")


def test_no_invariant_violation_after_clean_cascade(tmp_path: Path) -> None:
    db = make_db(tmp_path)
    parent, _ = seed_hierarchy(db, children=2)

    result = TransitionGateway(db).transition(parent.id, TransitionEvent.MARK_DONE)

    assert result.effects.invariant_violations == ()
    unresolved = TriageRepo(db).list_unresolved()
    assert not [entry for entry in unresolved if entry.triage_type is TriageType.MISMATCH]
    assert all(entry.state is not TriageState.ESCALATED for entry in unresolved)


_EVENTS = tuple(TransitionEvent)


@st.composite
def _tree_case(draw: st.DrawFn) -> tuple[tuple[int | None, ...], tuple[tuple[int, str], ...]]:
    node_count = draw(st.integers(min_value=2, max_value=7))
    parents: list[int | None] = [None]
    for index in range(1, node_count):
        parents.append(draw(st.integers(min_value=0, max_value=index - 1)))
    steps = draw(
        st.lists(
            st.tuples(
                st.integers(min_value=0, max_value=node_count - 1),
                st.sampled_from([event.value for event in _EVENTS]),
            ),
            min_size=1,
            max_size=25,
        )
    )
    return tuple(parents), tuple(steps)


@given(case=_tree_case())
@settings(
    max_examples=30,
    derandomize=True,
    deadline=None,
    suppress_health_check=[HealthCheck.function_scoped_fixture],
)
def test_property_done_or_cancelled_never_leaves_active_descendants(
    case: tuple[tuple[int | None, ...], tuple[tuple[int, str], ...]],
    tmp_path: Path,
) -> None:
    parents, steps = case
    digest = hashlib.sha1(repr(case).encode("utf-8")).hexdigest()
    db_path = tmp_path / "state" / f"tree-{digest[:12]}.sqlite3"
    if db_path.exists():
        db_path.unlink()
    db = StateDB(db_path)
    db.migrate()

    nodes = []
    for parent_index in parents:
        parent_id = None if parent_index is None else nodes[parent_index].id
        nodes.append(seed_work_order(db, status=WorkOrderStatus.DRAFT, parent_id=parent_id))

    gateway = TransitionGateway(db)
    for node_index, event in steps:
        try:
            gateway.transition(nodes[node_index].id, event)
        except TransitionError:
            continue

    repo = WorkOrderRepo(db)
    stored = {item.id: item for item in repo.list(limit=50)}
    children: dict[str, list[str]] = {}
    for item in stored.values():
        if item.parent_id is not None:
            children.setdefault(item.parent_id, []).append(item.id)

    for item in stored.values():
        if item.status not in {WorkOrderStatus.DONE, WorkOrderStatus.CANCELLED}:
            continue
        pending = list(children.get(item.id, ()))
        while pending:
            descendant = stored[pending.pop()]
            assert descendant.status in TERMINAL_STATUSES
            pending.extend(children.get(descendant.id, ()))
