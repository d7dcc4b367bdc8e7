"""
work-order-engine — package root

File: src/work_order_engine/__init__.py
Last updated: 2026-10-18

Purpose
- Work order lifecycle state machine plus the autonomic remediation loop
  (Tier-1 monitor sweep, escalation policy, Tier-2 diagnostician).

Import boundary rules
- No side effects at import time (no config loading, no logging init).
- Heavy submodules are imported by the callers that need them.
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
