"""
work-order-engine — Tier-2 diagnostician

File: src/work_order_engine/diagnostician/__init__.py
Last updated: 2026-10-18

Purpose
- Claims escalated triage entries in bounded batches, obtains a root-cause diagnosis from
  the reasoning collaborator, and materializes it as a parent work order with fix tasks.
"""
