"""
work-order-engine — persistence layer

File: src/work_order_engine/persistence/__init__.py
Last updated: 2026-10-18

Purpose
- State DB access, migrations, repositories for work orders, triage, logs and the task queue.

Functional requirements
- Must support safe resume after crash and concurrent writers (BEGIN IMMEDIATE + WAL).

Non-functional requirements
- SQLite-first; avoid heavy DB dependencies.
"""

from work_order_engine.persistence.repositories import (
    AuditRepo,
    CorrelationRepo,
    ExecutionLogRepo,
    LessonRepo,
    QAFindingRepo,
    TriageRepo,
    WorkOrderRepo,
)
from work_order_engine.persistence.state_db import (
    StateDB,
    StateDBBusyError,
    StateDBCorruptionError,
    StateDBError,
    StateDBMigrationError,
)

__all__ = [
    "AuditRepo",
    "CorrelationRepo",
    "ExecutionLogRepo",
    "LessonRepo",
    "QAFindingRepo",
    "StateDB",
    "StateDBBusyError",
    "StateDBCorruptionError",
    "StateDBError",
    "StateDBMigrationError",
    "TriageRepo",
    "WorkOrderRepo",
]
