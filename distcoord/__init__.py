"""
distcoord - coordination substrate for a replicated record-keeping service.

This package provides the coordination primitives a group of cooperating
processes needs:
- Lamport logical clock for causal ordering of events
- Reliable push delivery with retry and backoff
- Append-only operation log, integrity-checked checkpoints and startup recovery
- Bully leader election over a static peer set
- Chunked parallel batch execution with deterministic reduction
"""

__version__ = "0.1.0"

from distcoord.clock.lamport import LogicalClock
from distcoord.handlers import BusinessHandlers, RestoredRecord
from distcoord.node import CoordinationNode

__all__ = [
    "BusinessHandlers",
    "CoordinationNode",
    "LogicalClock",
    "RestoredRecord",
]
