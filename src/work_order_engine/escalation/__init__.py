"""Escalation policy and the durable task queue that hands work to Tier-2."""
