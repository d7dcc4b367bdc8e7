"""Property tests: random event sequences always follow the transition table."""

from __future__ import annotations

import tempfile
from pathlib import Path

from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from work_order_engine.domain.models import TERMINAL_STATUSES, WorkOrderStatus
from work_order_engine.lifecycle.transitions import (
    TRANSITION_TABLE,
    TransitionError,
    TransitionErrorCode,
    TransitionEvent,
    TransitionGateway,
)
from work_order_engine.persistence.repositories import AuditRepo

from .. import fixed_now, make_db, reload, seed_work_order


@given(events=st.lists(st.sampled_from(list(TransitionEvent)), min_size=1, max_size=12))
@settings(
    max_examples=40,
    deadline=None,
    derandomize=True,
    suppress_health_check=[HealthCheck.too_slow],
)
def test_random_event_sequences_follow_transition_table(events: list[TransitionEvent]) -> None:
    with tempfile.TemporaryDirectory() as raw_dir:
        db = make_db(Path(raw_dir))
        gateway = TransitionGateway(db)
        work_order = seed_work_order(db)
        expected = WorkOrderStatus.DRAFT
        applied = 0

        for index, event in enumerate(events, start=1):
            sources, target = TRANSITION_TABLE[event]
            try:
                result = gateway.transition(
                    work_order.id, event, {"reason": "property"}, now=fixed_now(index)
                )
            except TransitionError as exc:
                assert expected not in sources
                assert exc.code is TransitionErrorCode.ERR_INVALID_TRANSITION
            else:
                assert expected in sources
                assert result.previous_status is expected
                assert result.new_status is target
                expected = target
                applied += 1

            stored = reload(db, work_order)
            assert stored.status is expected
            if expected in TERMINAL_STATUSES:
                assert stored.completed_at is not None

        transitions = [
            record
            for record in AuditRepo(db).list_for_work_order(work_order.id)
            if record.event_type == "transition"
        ]
        assert len(transitions) == applied
