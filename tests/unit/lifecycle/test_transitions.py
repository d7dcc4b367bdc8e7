"""Unit tests for the transition gateway state machine."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from work_order_engine.domain.models import Priority, WorkOrderStatus
from work_order_engine.lifecycle.transitions import (
    CREATED_AUDIT_EVENT,
    TRANSITION_AUDIT_EVENT,
    TRANSITION_TABLE,
    TransitionError,
    TransitionErrorCode,
    TransitionEvent,
    TransitionGateway,
    allowed_events,
)
from work_order_engine.persistence.repositories import AuditRepo, WorkOrderRepo

from .. import fixed_now, make_db, reload, seed_work_order

if TYPE_CHECKING:
    from pathlib import Path

    from work_order_engine.persistence.state_db import StateDB


def _gateway(db: StateDB) -> TransitionGateway:
    return TransitionGateway(db)


def test_create_draft_allocates_slug_and_audits(tmp_path: Path) -> None:
    db = make_db(tmp_path)
    gateway = _gateway(db)

    first = gateway.create_draft_work_order(
        "Rotate keys",
        "Replace the expiring signing key",
        acceptance_criteria="New key is live",
        priority=Priority.P1_HIGH,
        tags=("security", "security", "keys"),
        now=fixed_now(),
    )
    second = gateway.create_draft_work_order("Second", "Another objective", now=fixed_now(1))

    assert first.slug == "WO-0001"
    assert second.slug == "WO-0002"
    assert first.status is WorkOrderStatus.DRAFT
    assert first.tags == ("security", "keys")
    audit = AuditRepo(db).list_for_work_order(first.id)
    assert [record.event_type for record in audit] == [CREATED_AUDIT_EVENT]
    assert audit[0].new_status is WorkOrderStatus.DRAFT
    assert audit[0].payload["slug"] == "WO-0001"


def test_create_draft_rejects_terminal_or_missing_parent(tmp_path: Path) -> None:
    db = make_db(tmp_path)
    gateway = _gateway(db)
    done_parent = seed_work_order(db, status=WorkOrderStatus.DONE)

    with pytest.raises(TransitionError) as terminal:
        gateway.create_draft_work_order("child", "objective", parent_id=done_parent.id)
    with pytest.raises(TransitionError) as missing:
        gateway.create_draft_work_order("child", "objective", parent_id="wo-unknown")

    assert terminal.value.code is TransitionErrorCode.ERR_VALIDATION
    assert missing.value.code is TransitionErrorCode.ERR_VALIDATION
    assert len(WorkOrderRepo(db).list()) == 1


def test_create_draft_rejects_unknown_dependencies(tmp_path: Path) -> None:
    db = make_db(tmp_path)

    with pytest.raises(TransitionError) as caught:
        _gateway(db).create_draft_work_order(
            "child", "objective", depends_on=("wo-01HZZZZZZZZZZZZZZZZZZZZZZZ",)
        )

    assert caught.value.code is TransitionErrorCode.ERR_VALIDATION
    assert "unknown dependencies" in caught.value.message


def test_happy_path_lifecycle(tmp_path: Path) -> None:
    db = make_db(tmp_path)
    gateway = _gateway(db)
    work_order = gateway.create_draft_work_order("Ship it", "Deliver the change", now=fixed_now())

    gateway.transition(work_order.id, TransitionEvent.MARK_READY, now=fixed_now(1))
    gateway.transition(
        work_order.id,
        "start_work",
        {"claimed_by": "agent-7"},
        actor="dispatcher",
        now=fixed_now(2),
    )
    gateway.transition(work_order.id, TransitionEvent.SUBMIT_FOR_REVIEW, now=fixed_now(3))
    result = gateway.transition(
        work_order.id,
        TransitionEvent.QA_PASSED,
        {"summary": "Shipped behind a flag"},
        now=fixed_now(4),
    )

    stored = reload(db, work_order)
    assert result.previous_status is WorkOrderStatus.REVIEW
    assert result.new_status is WorkOrderStatus.DONE
    assert stored.status is WorkOrderStatus.DONE
    assert stored.started_at == fixed_now(2)
    assert stored.completed_at == fixed_now(4)
    assert stored.claimed_by == "agent-7"
    assert stored.summary == "Shipped behind a flag"

    audit = AuditRepo(db).list_for_work_order(work_order.id)
    transitions = [record for record in audit if record.event_type == TRANSITION_AUDIT_EVENT]
    assert [(record.previous_status, record.new_status) for record in transitions] == [
        (WorkOrderStatus.DRAFT, WorkOrderStatus.READY),
        (WorkOrderStatus.READY, WorkOrderStatus.IN_PROGRESS),
        (WorkOrderStatus.IN_PROGRESS, WorkOrderStatus.REVIEW),
        (WorkOrderStatus.REVIEW, WorkOrderStatus.DONE),
    ]
    assert transitions[1].actor == "dispatcher"


def test_invalid_transition_is_rejected_without_mutation(tmp_path: Path) -> None:
    db = make_db(tmp_path)
    gateway = _gateway(db)
    work_order = seed_work_order(db, status=WorkOrderStatus.DRAFT)

    with pytest.raises(TransitionError) as caught:
        gateway.transition(work_order.id, TransitionEvent.MARK_DONE, now=fixed_now(1))

    error = caught.value
    assert error.code is TransitionErrorCode.ERR_INVALID_TRANSITION
    assert error.evaluation["current_status"] == "draft"
    assert "mark_ready" in error.evaluation["allowed_events"]  # type: ignore[operator]
    assert reload(db, work_order).status is WorkOrderStatus.DRAFT
    assert AuditRepo(db).list_for_work_order(work_order.id) == []


def test_terminal_work_orders_reject_every_event(tmp_path: Path) -> None:
    db = make_db(tmp_path)
    gateway = _gateway(db)
    work_order = seed_work_order(db, status=WorkOrderStatus.CANCELLED)

    for event in TransitionEvent:
        with pytest.raises(TransitionError) as caught:
            gateway.transition(work_order.id, event)
        assert caught.value.code is TransitionErrorCode.ERR_INVALID_TRANSITION


def test_unknown_work_order_is_not_found(tmp_path: Path) -> None:
    db = make_db(tmp_path)

    with pytest.raises(TransitionError) as caught:
        _gateway(db).transition("wo-missing", TransitionEvent.CANCEL)

    assert caught.value.code is TransitionErrorCode.ERR_NOT_FOUND
    assert caught.value.to_dict()["code"] == "ERR_NOT_FOUND"


def test_mark_ready_requires_objective(tmp_path: Path) -> None:
    db = make_db(tmp_path)
    work_order = seed_work_order(db, objective="", status=WorkOrderStatus.DRAFT)

    with pytest.raises(TransitionError) as caught:
        _gateway(db).transition(work_order.id, TransitionEvent.MARK_READY)

    assert caught.value.code is TransitionErrorCode.ERR_VALIDATION
    assert reload(db, work_order).status is WorkOrderStatus.DRAFT


@pytest.mark.parametrize(
    ("payload", "fragment"),
    [
        ({"owner": "x"}, "unexpected payload fields"),
        ({"summary": ""}, "payload.summary"),
        ({"clear_dependencies": "yes"}, "clear_dependencies"),
        ({"metadata": ["not", "an", "object"]}, "payload.metadata"),
    ],
)
def test_payload_validation(tmp_path: Path, payload: dict[str, object], fragment: str) -> None:
    db = make_db(tmp_path)
    work_order = seed_work_order(db, status=WorkOrderStatus.READY)

    with pytest.raises(TransitionError) as caught:
        _gateway(db).transition(work_order.id, TransitionEvent.START_WORK, payload)

    assert caught.value.code is TransitionErrorCode.ERR_VALIDATION
    assert fragment in caught.value.message


def test_unknown_event_is_validation_error(tmp_path: Path) -> None:
    db = make_db(tmp_path)
    work_order = seed_work_order(db)

    with pytest.raises(TransitionError) as caught:
        _gateway(db).transition(work_order.id, "archive")

    assert caught.value.code is TransitionErrorCode.ERR_VALIDATION


def test_cancel_records_reason(tmp_path: Path) -> None:
    db = make_db(tmp_path)
    work_order = seed_work_order(db, status=WorkOrderStatus.BLOCKED)

    _gateway(db).transition(
        work_order.id, TransitionEvent.CANCEL, {"reason": "superseded"}, now=fixed_now(5)
    )

    stored = reload(db, work_order)
    assert stored.status is WorkOrderStatus.CANCELLED
    assert stored.cancellation_reason == "superseded"
    assert stored.completed_at == fixed_now(5)


def test_mark_failed_uses_reason_as_summary(tmp_path: Path) -> None:
    db = make_db(tmp_path)
    work_order = seed_work_order(db, status=WorkOrderStatus.IN_PROGRESS)

    _gateway(db).transition(work_order.id, TransitionEvent.MARK_FAILED, {"reason": "OOM"})

    assert reload(db, work_order).summary == "OOM"


def test_dependency_satisfied_can_clear_dependencies(tmp_path: Path) -> None:
    db = make_db(tmp_path)
    upstream = seed_work_order(db, status=WorkOrderStatus.DONE)
    blocked = seed_work_order(db, status=WorkOrderStatus.BLOCKED, depends_on=(upstream.id,))

    _gateway(db).transition(
        blocked.id, TransitionEvent.DEPENDENCY_SATISFIED, {"clear_dependencies": True}
    )

    stored = reload(db, blocked)
    assert stored.status is WorkOrderStatus.READY
    assert stored.depends_on == ()


def test_qa_failed_returns_to_in_progress_and_keeps_started_at(tmp_path: Path) -> None:
    db = make_db(tmp_path)
    work_order = seed_work_order(
        db, status=WorkOrderStatus.REVIEW, started_at=fixed_now(1), created_at=fixed_now()
    )

    _gateway(db).transition(work_order.id, TransitionEvent.QA_FAILED, now=fixed_now(10))

    stored = reload(db, work_order)
    assert stored.status is WorkOrderStatus.IN_PROGRESS
    assert stored.started_at == fixed_now(1)


def test_allowed_events_match_transition_table() -> None:
    assert allowed_events(WorkOrderStatus.REVIEW) == (
        TransitionEvent.QA_PASSED,
        TransitionEvent.QA_FAILED,
        TransitionEvent.MARK_DONE,
        TransitionEvent.MARK_FAILED,
        TransitionEvent.CANCEL,
    )
    for status in (WorkOrderStatus.DONE, WorkOrderStatus.CANCELLED, WorkOrderStatus.FAILED):
        assert allowed_events(status) == ()
    assert TRANSITION_TABLE[TransitionEvent.BLOCK][1] is WorkOrderStatus.BLOCKED


def test_result_to_dict_reports_effects(tmp_path: Path) -> None:
    db = make_db(tmp_path)
    work_order = seed_work_order(db, status=WorkOrderStatus.READY)

    result = _gateway(db).transition(work_order.id, TransitionEvent.START_WORK)

    payload = result.to_dict()
    assert payload["success"] is True
    assert payload["new_status"] == "in_progress"
    assert payload["effects"] == {
        "cancelled_descendants": [],
        "failed_ancestors": [],
        "invariant_violations": [],
    }
