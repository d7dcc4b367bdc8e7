"""Promote triage entries to the diagnostician and dispatch a ``diagnose`` task."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, Final

import structlog

from work_order_engine.constants import DIAGNOSE_TOPIC, ESCALATE_TO_DIAGNOSTICIAN, MONITOR_ACTOR
from work_order_engine.domain import ids
from work_order_engine.domain.models import (
    AuditRecord,
    CorrelationGroup,
    JSONValue,
    Severity,
    TriageEntry,
    TriageState,
    utc_now,
)
from work_order_engine.persistence.repositories import AuditRepo, TriageRepo
from work_order_engine.persistence.state_db import StateDBError

if TYPE_CHECKING:
    from work_order_engine.escalation.task_queue import TaskQueue
    from work_order_engine.persistence.state_db import StateDB

ESCALATION_AUDIT_EVENT: Final[str] = "triage_escalated"
DEFAULT_CORRELATION_THRESHOLD: Final[int] = 3


@dataclass(frozen=True, slots=True)
class EscalationOutcome:
    escalated_ids: tuple[str, ...] = ()
    dispatched_task_id: str | None = None
    dispatch_error: str | None = None

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "escalated_ids": list(self.escalated_ids),
            "dispatched_task_id": self.dispatched_task_id,
            "dispatch_error": self.dispatch_error,
        }


class EscalationPolicy:
    """Critical entries and large correlation groups go to the diagnostician."""

    def __init__(
        self,
        db: StateDB,
        queue: TaskQueue,
        *,
        correlation_threshold: int = DEFAULT_CORRELATION_THRESHOLD,
        max_attempts: int = 5,
        logger: Any | None = None,
    ) -> None:
        if correlation_threshold < 1:
            raise ValueError("correlation_threshold must be >= 1")
        self._db = db
        self._queue = queue
        self._triage = TriageRepo(db)
        self._audit = AuditRepo(db)
        self._correlation_threshold = correlation_threshold
        self._max_attempts = max_attempts
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def apply(
        self,
        entries: Iterable[TriageEntry],
        correlations: Sequence[CorrelationGroup] = (),
        *,
        now: datetime | None = None,
    ) -> EscalationOutcome:
        at = now or utc_now()
        by_id = {entry.id: entry for entry in entries if not entry.is_resolved}

        reasons: dict[str, str] = {}
        for entry in by_id.values():
            if entry.severity is Severity.CRITICAL:
                reasons[entry.id] = "critical_severity"
        for group in correlations:
            if group.size < self._correlation_threshold:
                continue
            members = set(group.work_order_ids)
            for entry in by_id.values():
                if entry.work_order_id in members and entry.id not in reasons:
                    reasons[entry.id] = f"correlation:{group.correlation_type}"

        escalated: list[str] = []
        for entry_id, reason in reasons.items():
            try:
                promoted = self._escalate(by_id[entry_id], reason, now=at)
            except StateDBError as exc:
                self._logger.error("triage_escalation_failed", triage_id=entry_id, error=str(exc))
                continue
            if promoted:
                escalated.append(entry_id)

        backlog = self._triage.list(
            states=(TriageState.ESCALATED,), escalate_to=ESCALATE_TO_DIAGNOSTICIAN, limit=1
        )
        if not escalated and not backlog:
            return EscalationOutcome()
        task_id, error = self._dispatch(len(escalated), now=at)
        return EscalationOutcome(
            escalated_ids=tuple(escalated),
            dispatched_task_id=task_id,
            dispatch_error=error,
        )

    def _escalate(self, entry: TriageEntry, reason: str, *, now: datetime) -> bool:
        with self._db.transaction() as conn:
            if not self._triage.escalate(
                entry.id, ESCALATE_TO_DIAGNOSTICIAN, now=now, conn=conn
            ):
                return False
            self._audit.append(
                AuditRecord(
                    id=ids.generate_audit_id(),
                    work_order_id=entry.work_order_id,
                    event_type=ESCALATION_AUDIT_EVENT,
                    actor=MONITOR_ACTOR,
                    payload={
                        "triage_id": entry.id,
                        "triage_type": entry.triage_type.value,
                        "severity": entry.severity.value,
                        "reason": reason,
                        "escalate_to": ESCALATE_TO_DIAGNOSTICIAN,
                    },
                    created_at=now,
                ),
                conn=conn,
            )
        self._logger.info(
            "triage_escalated",
            triage_id=entry.id,
            work_order_id=entry.work_order_id,
            reason=reason,
        )
        return True

    def _dispatch(self, escalated_count: int, *, now: datetime) -> tuple[str | None, str | None]:
        """Push one ``diagnose`` message unless one is already outstanding."""

        try:
            if self._queue.outstanding(DIAGNOSE_TOPIC) > 0:
                self._logger.info("diagnose_dispatch_skipped", reason="already_queued")
                return None, None
            message = self._queue.push(
                DIAGNOSE_TOPIC,
                {"trigger": "monitor_escalation", "escalated_count": escalated_count},
                max_attempts=self._max_attempts,
                now=now,
            )
        except StateDBError as exc:
            self._logger.error("diagnose_dispatch_failed", error=str(exc))
            return None, str(exc)
        return message.id, None


__all__ = [
    "DEFAULT_CORRELATION_THRESHOLD",
    "ESCALATION_AUDIT_EVENT",
    "EscalationOutcome",
    "EscalationPolicy",
]
