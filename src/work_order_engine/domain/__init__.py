"""
work-order-engine — domain layer

File: src/work_order_engine/domain/__init__.py
Last updated: 2026-10-18

Purpose
- Domain types shared across the engine: WorkOrder, TriageEntry, CorrelationGroup,
  AuditRecord, ExecutionLogEntry, QAFinding, Lesson, Diagnosis, TaskMessage.

Functional requirements
- Domain objects must be serializable and versioned.
- Keep the domain layer free of IO side effects.
"""
