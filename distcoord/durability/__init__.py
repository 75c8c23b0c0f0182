"""Operation log, checkpoints and crash recovery."""

from distcoord.durability.checkpoint import (
    FULL_SYSTEM,
    Checkpoint,
    CheckpointConfig,
    CheckpointScheduler,
    CheckpointStore,
    compute_digest,
    verify_integrity,
)
from distcoord.durability.oplog import OperationLog, OperationLogEntry, replay_order
from distcoord.durability.recovery import RecoveryCoordinator, RecoveryResult
from distcoord.durability.sync import SyncReport, SyncVerifier

__all__ = [
    "FULL_SYSTEM",
    "Checkpoint",
    "CheckpointConfig",
    "CheckpointScheduler",
    "CheckpointStore",
    "OperationLog",
    "OperationLogEntry",
    "RecoveryCoordinator",
    "RecoveryResult",
    "SyncReport",
    "SyncVerifier",
    "compute_digest",
    "replay_order",
    "verify_integrity",
]
