"""
work-order-engine — durable task queue

File: src/work_order_engine/escalation/task_queue.py
Last updated: 2026-10-18

Purpose
- SQLite-backed message queue that carries diagnostician invocations. A push survives the
  consumer being down; a worker pulls, runs the topic handler and acknowledges.

Functional requirements
- Claims are atomic inside ``BEGIN IMMEDIATE`` and carry a lease; an expired lease makes
  the message claimable again.
- ``nack`` requeues with a delay until ``max_attempts`` is reached, then marks it dead.
- A handler failure is logged and nacked; the worker keeps polling.
"""

from __future__ import annotations

import json
import time
from collections.abc import Callable, Mapping, Sequence
from datetime import datetime, timedelta
from typing import Any, Final

import structlog

from work_order_engine.domain import ids
from work_order_engine.domain.models import (
    JSONValue,
    TaskMessage,
    TaskStatus,
    datetime_to_iso8601z,
    utc_now,
)
from work_order_engine.persistence.state_db import RowValue, StateDB, canonical_json

DEFAULT_LEASE_SECONDS: Final[int] = 300
DEFAULT_RETRY_DELAY_SECONDS: Final[int] = 60
DEFAULT_MAX_ATTEMPTS: Final[int] = 5
_MAX_ERROR_CHARS: Final[int] = 2000

_COLUMNS: Final[str] = """
    id,
    topic,
    payload_json,
    status,
    attempts,
    max_attempts,
    visible_at,
    claimed_by,
    claimed_at,
    last_error,
    created_at,
    updated_at
"""

TaskHandler = Callable[[TaskMessage], object]


class TaskQueue:
    """Durable at-least-once queue over the ``task_queue`` table."""

    def __init__(self, db: StateDB, *, logger: Any | None = None) -> None:
        self._db = db
        self._db.ensure_migrated()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def push(
        self,
        topic: str,
        payload: Mapping[str, JSONValue] | None = None,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        delay_seconds: int = 0,
        now: datetime | None = None,
    ) -> TaskMessage:
        if delay_seconds < 0:
            raise ValueError("delay_seconds must be >= 0")
        at = now or utc_now()
        message = TaskMessage(
            id=ids.generate_task_id(),
            topic=topic,
            payload=dict(payload or {}),
            max_attempts=max_attempts,
            visible_at=at + timedelta(seconds=delay_seconds),
            created_at=at,
            updated_at=at,
        )
        self._db.execute(
            f"INSERT INTO task_queue ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                message.id,
                message.topic,
                canonical_json(message.payload),
                message.status.value,
                message.attempts,
                message.max_attempts,
                datetime_to_iso8601z(message.visible_at),
                None,
                None,
                None,
                datetime_to_iso8601z(message.created_at),
                datetime_to_iso8601z(message.updated_at),
            ),
        )
        self._logger.info("task_pushed", task_id=message.id, topic=topic)
        return message

    def claim(
        self,
        worker_id: str,
        *,
        topics: Sequence[str] | None = None,
        lease_seconds: int = DEFAULT_LEASE_SECONDS,
        now: datetime | None = None,
    ) -> TaskMessage | None:
        """Claim the oldest visible pending message, or one whose lease has expired."""

        if not worker_id.strip():
            raise ValueError("worker_id must be non-empty")
        if lease_seconds <= 0:
            raise ValueError("lease_seconds must be > 0")
        at = now or utc_now()
        stamp = datetime_to_iso8601z(at)
        lease_cutoff = datetime_to_iso8601z(at - timedelta(seconds=lease_seconds))

        topic_clause = ""
        topic_params: list[str] = []
        if topics:
            topic_clause = f"AND topic IN ({','.join('?' for _ in topics)})"
            topic_params = list(topics)

        with self._db.transaction() as conn:
            # Expired leases that already used every attempt are not handed out again.
            self._db.execute(
                """
                UPDATE task_queue
                SET status = 'dead',
                    last_error = COALESCE(last_error, 'lease expired'),
                    updated_at = ?
                WHERE status = 'claimed' AND claimed_at < ? AND attempts >= max_attempts
                """,
                (stamp, lease_cutoff),
                conn=conn,
            )
            row = self._db.query_one(
                f"""
                SELECT id FROM task_queue
                WHERE (
                    (status = 'pending' AND visible_at <= ?)
                    OR (status = 'claimed' AND claimed_at < ?)
                )
                {topic_clause}
                ORDER BY visible_at ASC, created_at ASC, id ASC
                LIMIT 1
                """,
                (stamp, lease_cutoff, *topic_params),
                conn=conn,
            )
            if row is None:
                return None
            message_id = row["id"]
            self._db.execute(
                """
                UPDATE task_queue
                SET status = 'claimed',
                    claimed_by = ?,
                    claimed_at = ?,
                    attempts = attempts + 1,
                    updated_at = ?
                WHERE id = ?
                """,
                (worker_id, stamp, stamp, message_id),
                conn=conn,
            )
            claimed = self._db.query_one(
                f"SELECT {_COLUMNS} FROM task_queue WHERE id = ?", (message_id,), conn=conn
            )
        if claimed is None:
            return None
        message = _message_from_row(claimed)
        self._logger.debug(
            "task_claimed",
            task_id=message.id,
            topic=message.topic,
            worker_id=worker_id,
            attempt=message.attempts,
        )
        return message

    def ack(self, message_id: str, worker_id: str, *, now: datetime | None = None) -> bool:
        changed = self._db.execute(
            """
            UPDATE task_queue
            SET status = 'acked', updated_at = ?
            WHERE id = ? AND claimed_by = ? AND status = 'claimed'
            """,
            (datetime_to_iso8601z(now or utc_now()), message_id, worker_id),
        )
        if changed != 1:
            self._logger.warning("task_ack_ignored", task_id=message_id, worker_id=worker_id)
        return changed == 1

    def nack(
        self,
        message_id: str,
        worker_id: str,
        error: str,
        *,
        retry_delay_seconds: int = DEFAULT_RETRY_DELAY_SECONDS,
        now: datetime | None = None,
    ) -> TaskMessage | None:
        """Release a failed message for retry, or mark it dead when attempts are exhausted."""

        if retry_delay_seconds < 0:
            raise ValueError("retry_delay_seconds must be >= 0")
        at = now or utc_now()
        stamp = datetime_to_iso8601z(at)
        detail = error[:_MAX_ERROR_CHARS] or "unknown error"
        with self._db.transaction() as conn:
            row = self._db.query_one(
                f"""
                SELECT {_COLUMNS} FROM task_queue
                WHERE id = ? AND claimed_by = ? AND status = 'claimed'
                """,
                (message_id, worker_id),
                conn=conn,
            )
            if row is None:
                self._logger.warning("task_nack_ignored", task_id=message_id, worker_id=worker_id)
                return None
            current = _message_from_row(row)
            if current.attempts >= current.max_attempts:
                self._db.execute(
                    """
                    UPDATE task_queue
                    SET status = 'dead', last_error = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (detail, stamp, message_id),
                    conn=conn,
                )
            else:
                self._db.execute(
                    """
                    UPDATE task_queue
                    SET status = 'pending',
                        claimed_by = NULL,
                        claimed_at = NULL,
                        visible_at = ?,
                        last_error = ?,
                        updated_at = ?
                    WHERE id = ?
                    """,
                    (
                        datetime_to_iso8601z(at + timedelta(seconds=retry_delay_seconds)),
                        detail,
                        stamp,
                        message_id,
                    ),
                    conn=conn,
                )
            updated = self._db.query_one(
                f"SELECT {_COLUMNS} FROM task_queue WHERE id = ?", (message_id,), conn=conn
            )
        message = None if updated is None else _message_from_row(updated)
        if message is not None and message.status is TaskStatus.DEAD:
            self._logger.error(
                "task_dead_lettered",
                task_id=message_id,
                topic=message.topic,
                attempts=message.attempts,
                error=detail,
            )
        return message

    def get(self, message_id: str) -> TaskMessage | None:
        row = self._db.query_one(
            f"SELECT {_COLUMNS} FROM task_queue WHERE id = ?", (message_id,)
        )
        return None if row is None else _message_from_row(row)

    def list(
        self,
        *,
        statuses: Sequence[TaskStatus] | None = None,
        topic: str | None = None,
        limit: int = 100,
    ) -> list[TaskMessage]:
        clauses: list[str] = []
        params: list[str | int] = []
        if statuses:
            clauses.append(f"status IN ({','.join('?' for _ in statuses)})")
            params.extend(status.value for status in statuses)
        if topic is not None:
            clauses.append("topic = ?")
            params.append(topic)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._db.query_all(
            f"""
            SELECT {_COLUMNS} FROM task_queue
            {where}
            ORDER BY created_at ASC, id ASC
            LIMIT ?
            """,
            (*params, limit),
        )
        return [_message_from_row(row) for row in rows]

    def outstanding(self, topic: str) -> int:
        """Messages on ``topic`` that are pending or currently claimed."""

        row = self._db.query_one(
            """
            SELECT COUNT(*) AS total FROM task_queue
            WHERE topic = ? AND status IN ('pending', 'claimed')
            """,
            (topic,),
        )
        total = 0 if row is None else row["total"]
        return total if isinstance(total, int) else 0


class TaskWorker:
    """Pulls messages for the registered topics and dispatches them to handlers."""

    def __init__(
        self,
        queue: TaskQueue,
        handlers: Mapping[str, TaskHandler],
        worker_id: str,
        *,
        lease_seconds: int = DEFAULT_LEASE_SECONDS,
        retry_delay_seconds: int = DEFAULT_RETRY_DELAY_SECONDS,
        logger: Any | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if not handlers:
            raise ValueError("handlers must not be empty")
        self._queue = queue
        self._handlers = dict(handlers)
        self._worker_id = worker_id
        self._lease_seconds = lease_seconds
        self._retry_delay_seconds = retry_delay_seconds
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._sleep = sleep

    @property
    def worker_id(self) -> str:
        return self._worker_id

    def run_once(self, *, now: datetime | None = None) -> TaskMessage | None:
        """Process at most one message; returns it, or ``None`` when the queue is idle."""

        message = self._queue.claim(
            self._worker_id,
            topics=sorted(self._handlers),
            lease_seconds=self._lease_seconds,
            now=now,
        )
        if message is None:
            return None

        handler = self._handlers[message.topic]
        log = self._logger.bind(task_id=message.id, topic=message.topic, attempt=message.attempts)
        started = time.monotonic()
        try:
            handler(message)
        except Exception as exc:  # noqa: BLE001
            log.exception("task_handler_failed", error=str(exc))
            self._queue.nack(
                message.id,
                self._worker_id,
                f"{type(exc).__name__}: {exc}",
                retry_delay_seconds=self._retry_delay_seconds,
                now=now,
            )
            return message

        self._queue.ack(message.id, self._worker_id, now=now)
        log.info(
            "task_completed",
            duration_ms=max(int(round((time.monotonic() - started) * 1000)), 0),
        )
        return message

    def run(self, poll_interval: float = 5.0, max_iterations: int | None = None) -> int:
        """Poll until ``max_iterations`` is reached (forever when ``None``)."""

        if poll_interval < 0:
            raise ValueError("poll_interval must be >= 0")
        processed = 0
        iterations = 0
        while max_iterations is None or iterations < max_iterations:
            iterations += 1
            if self.run_once() is not None:
                processed += 1
                continue
            self._sleep(poll_interval)
        return processed


def _message_from_row(row: Mapping[str, RowValue]) -> TaskMessage:
    payload = json.loads(str(row["payload_json"]))
    return TaskMessage(
        id=str(row["id"]),
        topic=str(row["topic"]),
        payload=payload if isinstance(payload, dict) else {},
        status=TaskStatus(str(row["status"])),
        attempts=row["attempts"],
        max_attempts=row["max_attempts"],
        visible_at=str(row["visible_at"]),
        claimed_by=row["claimed_by"] if isinstance(row["claimed_by"], str) else None,
        claimed_at=row["claimed_at"] if isinstance(row["claimed_at"], str) else None,
        last_error=row["last_error"] if isinstance(row["last_error"], str) else None,
        created_at=str(row["created_at"]),
        updated_at=str(row["updated_at"]),
    )


__all__ = [
    "DEFAULT_LEASE_SECONDS",
    "DEFAULT_MAX_ATTEMPTS",
    "DEFAULT_RETRY_DELAY_SECONDS",
    "TaskHandler",
    "TaskQueue",
    "TaskWorker",
]
