"""
work-order-engine — transition gateway

File: src/work_order_engine/lifecycle/transitions.py
Last updated: 2026-10-18

Purpose
- The only sanctioned mutator of work order ``status``. Validates the event against the
  state machine, applies status-specific side effects, writes an immutable audit record and
  runs settlement synchronously for terminal targets.

Functional requirements
- Read-check-write-audit-settle is one ``BEGIN IMMEDIATE`` transaction with a
  compare-and-set on the stored status.
- Rejections are typed (``TransitionError.code``) and never mutate state.
- Draft creation allocates ``WO-NNNN`` slugs and audits the creation.
"""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, replace
from datetime import datetime
from enum import StrEnum
from typing import Any, Final

import structlog

from work_order_engine.constants import SYSTEM_ACTOR
from work_order_engine.domain import ids
from work_order_engine.domain.models import (
    TERMINAL_STATUSES,
    AuditRecord,
    JSONValue,
    Priority,
    WorkOrder,
    WorkOrderStatus,
    canonical_json,
    utc_now,
)
from work_order_engine.lifecycle.settlement import (
    SettlementEngine,
    SettlementError,
    SettlementOutcome,
)
from work_order_engine.persistence.repositories import AuditRepo, WorkOrderRepo
from work_order_engine.persistence.state_db import StateDB, StateDBError


class TransitionEvent(StrEnum):
    MARK_READY = "mark_ready"
    START_WORK = "start_work"
    BLOCK = "block"
    DEPENDENCY_SATISFIED = "dependency_satisfied"
    SUBMIT_FOR_REVIEW = "submit_for_review"
    QA_PASSED = "qa_passed"
    QA_FAILED = "qa_failed"
    MARK_DONE = "mark_done"
    MARK_FAILED = "mark_failed"
    CANCEL = "cancel"


class TransitionErrorCode(StrEnum):
    ERR_VALIDATION = "ERR_VALIDATION"
    ERR_NOT_FOUND = "ERR_NOT_FOUND"
    ERR_INVALID_TRANSITION = "ERR_INVALID_TRANSITION"
    ERR_TRANSITION_FAILED = "ERR_TRANSITION_FAILED"
    ERR_INTERNAL = "ERR_INTERNAL"


_NON_TERMINAL: Final[frozenset[WorkOrderStatus]] = frozenset(
    status for status in WorkOrderStatus if status not in TERMINAL_STATUSES
)

_S = WorkOrderStatus

# event -> (legal source statuses, target status)
TRANSITION_TABLE: Final[dict[TransitionEvent, tuple[frozenset[WorkOrderStatus], WorkOrderStatus]]] = {
    TransitionEvent.MARK_READY: (frozenset({_S.DRAFT}), _S.READY),
    TransitionEvent.START_WORK: (frozenset({_S.READY}), _S.IN_PROGRESS),
    TransitionEvent.BLOCK: (frozenset({_S.READY, _S.IN_PROGRESS}), _S.BLOCKED),
    TransitionEvent.DEPENDENCY_SATISFIED: (frozenset({_S.BLOCKED}), _S.READY),
    TransitionEvent.SUBMIT_FOR_REVIEW: (frozenset({_S.IN_PROGRESS}), _S.REVIEW),
    TransitionEvent.QA_PASSED: (frozenset({_S.REVIEW}), _S.DONE),
    TransitionEvent.QA_FAILED: (frozenset({_S.REVIEW}), _S.IN_PROGRESS),
    TransitionEvent.MARK_DONE: (frozenset({_S.IN_PROGRESS, _S.REVIEW}), _S.DONE),
    TransitionEvent.MARK_FAILED: (_NON_TERMINAL, _S.FAILED),
    TransitionEvent.CANCEL: (_NON_TERMINAL, _S.CANCELLED),
}

_PAYLOAD_KEYS: Final[frozenset[str]] = frozenset(
    {"summary", "reason", "claimed_by", "clear_dependencies", "metadata"}
)
_TEXT_PAYLOAD_KEYS: Final[tuple[str, ...]] = ("summary", "reason", "claimed_by")

TRANSITION_AUDIT_EVENT = "transition"
CREATED_AUDIT_EVENT = "created"


class TransitionError(Exception):
    """Typed rejection from the gateway; state is never mutated when this is raised."""

    def __init__(
        self,
        code: TransitionErrorCode,
        message: str,
        *,
        evaluation: Mapping[str, JSONValue] | None = None,
    ) -> None:
        super().__init__(f"{code.value}: {message}")
        self.code = code
        self.message = message
        self.evaluation: dict[str, JSONValue] = dict(evaluation or {})

    def to_dict(self) -> dict[str, JSONValue]:
        return {"code": self.code.value, "message": self.message, "evaluation": self.evaluation}


@dataclass(frozen=True, slots=True)
class TransitionResult:
    work_order_id: str
    event: TransitionEvent
    previous_status: WorkOrderStatus
    new_status: WorkOrderStatus
    audit_id: str
    effects: SettlementOutcome

    @property
    def success(self) -> bool:
        return True

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "success": True,
            "work_order_id": self.work_order_id,
            "event": self.event.value,
            "previous_status": self.previous_status.value,
            "new_status": self.new_status.value,
            "audit_id": self.audit_id,
            "effects": self.effects.to_dict(),
        }


def allowed_events(status: WorkOrderStatus) -> tuple[TransitionEvent, ...]:
    """Events that are legal from ``status``, in declaration order."""

    return tuple(event for event, (sources, _) in TRANSITION_TABLE.items() if status in sources)


class TransitionGateway:
    """Single entry point for work order status changes and draft creation."""

    def __init__(
        self,
        db: StateDB,
        *,
        settlement: SettlementEngine | None = None,
        logger: Any | None = None,
    ) -> None:
        self._db = db
        self._work_orders = WorkOrderRepo(db)
        self._audit = AuditRepo(db)
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._settlement = (
            settlement if settlement is not None else SettlementEngine(db, logger=self._logger)
        )

    def transition(
        self,
        work_order_id: str,
        event: TransitionEvent | str,
        payload: Mapping[str, object] | None = None,
        actor: str = SYSTEM_ACTOR,
        *,
        now: datetime | None = None,
    ) -> TransitionResult:
        parsed_event = _parse_event(event)
        normalized_payload = _validate_payload(payload)
        if not isinstance(work_order_id, str) or not work_order_id.strip():
            raise TransitionError(
                TransitionErrorCode.ERR_VALIDATION, "work_order_id must be a non-empty string"
            )
        if not isinstance(actor, str) or not actor.strip():
            raise TransitionError(
                TransitionErrorCode.ERR_VALIDATION, "actor must be a non-empty string"
            )
        at = now or utc_now()

        try:
            with self._db.transaction() as conn:
                result = self._apply(
                    conn,
                    work_order_id.strip(),
                    parsed_event,
                    normalized_payload,
                    actor.strip(),
                    at,
                )
        except TransitionError as exc:
            self._logger.info(
                "transition_rejected",
                work_order_id=work_order_id,
                transition_event=parsed_event.value,
                code=exc.code.value,
                reason=exc.message,
            )
            raise
        except SettlementError as exc:
            self._logger.warning(
                "transition_settlement_conflict",
                work_order_id=work_order_id,
                transition_event=parsed_event.value,
                error=str(exc),
            )
            raise TransitionError(
                TransitionErrorCode.ERR_TRANSITION_FAILED,
                str(exc),
                evaluation={"event": parsed_event.value, "stage": "settlement"},
            ) from exc
        except ValueError as exc:
            raise TransitionError(
                TransitionErrorCode.ERR_VALIDATION,
                str(exc),
                evaluation={"event": parsed_event.value},
            ) from exc
        except (StateDBError, sqlite3.Error) as exc:
            self._logger.error(
                "transition_internal_error",
                work_order_id=work_order_id,
                transition_event=parsed_event.value,
                error=str(exc),
            )
            raise TransitionError(
                TransitionErrorCode.ERR_INTERNAL,
                f"store failure while applying {parsed_event.value}",
                evaluation={"event": parsed_event.value},
            ) from exc

        self._logger.info(
            "transition_applied",
            work_order_id=result.work_order_id,
            transition_event=result.event.value,
            previous_status=result.previous_status.value,
            new_status=result.new_status.value,
            actor=actor,
            cancelled_count=len(result.effects.cancelled_descendants),
            failed_ancestor_count=len(result.effects.failed_ancestors),
        )
        return result

    def create_draft_work_order(
        self,
        name: str,
        objective: str,
        acceptance_criteria: str = "",
        priority: Priority | str = Priority.P2_MEDIUM,
        tags: Sequence[str] = (),
        parent_id: str | None = None,
        *,
        source: str = "manual",
        depends_on: Sequence[str] = (),
        execution_mode: str = "remote",
        actor: str = SYSTEM_ACTOR,
        now: datetime | None = None,
    ) -> WorkOrder:
        """Create a work order in ``draft`` with the next free slug."""

        at = now or utc_now()
        try:
            with self._db.transaction() as conn:
                if parent_id is not None:
                    parent = self._work_orders.get(parent_id, conn=conn)
                    if parent is None:
                        raise TransitionError(
                            TransitionErrorCode.ERR_VALIDATION,
                            f"parent work order not found: {parent_id}",
                            evaluation={"parent_id": parent_id},
                        )
                    if parent.status in TERMINAL_STATUSES:
                        raise TransitionError(
                            TransitionErrorCode.ERR_VALIDATION,
                            f"parent work order {parent.slug} is already {parent.status.value}",
                            evaluation={"parent_id": parent_id, "parent_status": parent.status.value},
                        )
                missing = [
                    dependency
                    for dependency in depends_on
                    if self._work_orders.get(dependency, conn=conn) is None
                ]
                if missing:
                    raise TransitionError(
                        TransitionErrorCode.ERR_VALIDATION,
                        "unknown dependencies: " + ", ".join(missing),
                        evaluation={"missing_dependencies": list(missing)},
                    )

                try:
                    work_order = WorkOrder(
                        id=ids.generate_work_order_id(),
                        slug=self._work_orders.next_slug(conn=conn),
                        name=name,
                        objective=objective,
                        acceptance_criteria=acceptance_criteria,
                        priority=priority,
                        tags=tuple(dict.fromkeys(tags)),
                        parent_id=parent_id,
                        depends_on=tuple(depends_on),
                        source=source,
                        execution_mode=execution_mode,
                        created_at=at,
                        updated_at=at,
                    )
                except ValueError as exc:
                    raise TransitionError(TransitionErrorCode.ERR_VALIDATION, str(exc)) from exc

                self._work_orders.add(work_order, conn=conn)
                self._audit.append(
                    AuditRecord(
                        id=ids.generate_audit_id(),
                        work_order_id=work_order.id,
                        event_type=CREATED_AUDIT_EVENT,
                        actor=actor,
                        new_status=work_order.status,
                        payload={
                            "slug": work_order.slug,
                            "parent_id": parent_id,
                            "source": source,
                            "priority": work_order.priority.value,
                        },
                        created_at=at,
                    ),
                    conn=conn,
                )
        except (StateDBError, sqlite3.Error) as exc:
            raise TransitionError(
                TransitionErrorCode.ERR_INTERNAL, "store failure while creating work order"
            ) from exc

        self._logger.info(
            "work_order_created",
            work_order_id=work_order.id,
            slug=work_order.slug,
            parent_id=parent_id,
            source=source,
        )
        return work_order

    def _apply(
        self,
        conn: sqlite3.Connection,
        work_order_id: str,
        event: TransitionEvent,
        payload: dict[str, JSONValue],
        actor: str,
        now: datetime,
    ) -> TransitionResult:
        current = self._work_orders.get(work_order_id, conn=conn)
        if current is None:
            raise TransitionError(
                TransitionErrorCode.ERR_NOT_FOUND,
                f"work order not found: {work_order_id}",
                evaluation={"work_order_id": work_order_id, "event": event.value},
            )

        sources, target = TRANSITION_TABLE[event]
        evaluation: dict[str, JSONValue] = {
            "current_status": current.status.value,
            "event": event.value,
            "allowed_events": [item.value for item in allowed_events(current.status)],
        }
        if current.status not in sources:
            raise TransitionError(
                TransitionErrorCode.ERR_INVALID_TRANSITION,
                f"{event.value} is not allowed from {current.status.value}",
                evaluation=evaluation,
            )
        if event is TransitionEvent.MARK_READY and not current.objective:
            raise TransitionError(
                TransitionErrorCode.ERR_VALIDATION,
                "objective is required before a work order can become ready",
                evaluation=evaluation,
            )

        try:
            updated = _with_side_effects(current, target, payload, actor, now)
        except ValueError as exc:
            raise TransitionError(
                TransitionErrorCode.ERR_VALIDATION, str(exc), evaluation=evaluation
            ) from exc

        if not self._work_orders.apply_status_change(
            updated, expected_status=current.status, conn=conn
        ):
            raise TransitionError(
                TransitionErrorCode.ERR_TRANSITION_FAILED,
                "work order status changed concurrently",
                evaluation=evaluation,
            )

        audit = self._audit.append(
            AuditRecord(
                id=ids.generate_audit_id(),
                work_order_id=current.id,
                event_type=TRANSITION_AUDIT_EVENT,
                actor=actor,
                previous_status=current.status,
                new_status=target,
                payload={"event": event.value, "payload": payload},
                created_at=now,
            ),
            conn=conn,
        )

        effects = SettlementOutcome()
        if target in TERMINAL_STATUSES:
            effects = self._settlement.on_terminal(updated, conn=conn, now=now)

        return TransitionResult(
            work_order_id=current.id,
            event=event,
            previous_status=current.status,
            new_status=target,
            audit_id=audit.id,
            effects=effects,
        )


def _parse_event(event: TransitionEvent | str) -> TransitionEvent:
    if isinstance(event, TransitionEvent):
        return event
    try:
        return TransitionEvent(str(event).strip())
    except ValueError as exc:
        raise TransitionError(
            TransitionErrorCode.ERR_VALIDATION,
            f"unknown transition event: {event!r}",
            evaluation={
                "event": str(event),
                "allowed_events": [item.value for item in TransitionEvent],
            },
        ) from exc


def _validate_payload(payload: Mapping[str, object] | None) -> dict[str, JSONValue]:
    if payload is None:
        return {}
    if not isinstance(payload, Mapping):
        raise TransitionError(TransitionErrorCode.ERR_VALIDATION, "payload must be an object")
    unknown = sorted(str(key) for key in payload if key not in _PAYLOAD_KEYS)
    if unknown:
        raise TransitionError(
            TransitionErrorCode.ERR_VALIDATION,
            f"unexpected payload fields: {unknown}",
            evaluation={"allowed_payload_fields": sorted(_PAYLOAD_KEYS)},
        )

    normalized: dict[str, JSONValue] = {}
    for key in _TEXT_PAYLOAD_KEYS:
        value = payload.get(key)
        if value is None:
            continue
        if not isinstance(value, str) or not value.strip():
            raise TransitionError(
                TransitionErrorCode.ERR_VALIDATION, f"payload.{key} must be a non-empty string"
            )
        normalized[key] = value.strip()

    clear = payload.get("clear_dependencies")
    if clear is not None:
        if not isinstance(clear, bool):
            raise TransitionError(
                TransitionErrorCode.ERR_VALIDATION, "payload.clear_dependencies must be boolean"
            )
        normalized["clear_dependencies"] = clear

    metadata = payload.get("metadata")
    if metadata is not None:
        if not isinstance(metadata, Mapping):
            raise TransitionError(
                TransitionErrorCode.ERR_VALIDATION, "payload.metadata must be an object"
            )
        try:
            normalized["metadata"] = json.loads(canonical_json(dict(metadata)))  # type: ignore[arg-type]
        except (TypeError, ValueError) as exc:
            raise TransitionError(
                TransitionErrorCode.ERR_VALIDATION, f"payload.metadata is not JSON: {exc}"
            ) from exc
    return normalized


def _with_side_effects(
    current: WorkOrder,
    target: WorkOrderStatus,
    payload: Mapping[str, JSONValue],
    actor: str,
    now: datetime,
) -> WorkOrder:
    changes: dict[str, object] = {"status": target, "updated_at": max(now, current.updated_at)}

    if target is WorkOrderStatus.IN_PROGRESS:
        if current.started_at is None:
            changes["started_at"] = now
        changes["claimed_by"] = payload.get("claimed_by") or current.claimed_by or actor
    if target in TERMINAL_STATUSES:
        changes["completed_at"] = now
    if target is WorkOrderStatus.READY and payload.get("clear_dependencies"):
        changes["depends_on"] = ()

    summary = payload.get("summary")
    reason = payload.get("reason")
    if isinstance(summary, str):
        changes["summary"] = summary
    elif target is WorkOrderStatus.FAILED and isinstance(reason, str):
        changes["summary"] = reason
    if target is WorkOrderStatus.CANCELLED and isinstance(reason, str):
        changes["cancellation_reason"] = reason

    return replace(current, **changes)


__all__ = [
    "CREATED_AUDIT_EVENT",
    "TRANSITION_AUDIT_EVENT",
    "TRANSITION_TABLE",
    "TransitionError",
    "TransitionErrorCode",
    "TransitionEvent",
    "TransitionGateway",
    "TransitionResult",
    "allowed_events",
]
