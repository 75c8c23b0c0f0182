"""Logical clocks for causal ordering of cross-process events."""

from distcoord.clock.lamport import LAMPORT_FIELD, LogicalClock

__all__ = ["LAMPORT_FIELD", "LogicalClock"]
