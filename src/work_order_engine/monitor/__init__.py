"""
work-order-engine — Tier-1 monitor

File: src/work_order_engine/monitor/__init__.py
Last updated: 2026-10-18

Purpose
- Cheap, repeatable sweep over active work orders. Each detector records findings in the
  triage queue; correlation groups findings that share a causal signature.

Functional requirements
- Sweeps are idempotent under at-least-once scheduling.
- A detector failure never aborts the remaining detectors.
"""
