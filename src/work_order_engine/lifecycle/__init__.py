"""Work order state machine: transition gateway and settlement engine."""
