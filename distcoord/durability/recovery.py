"""
Startup recovery.

Restores the latest checkpoint into the business store and replays the
operations logged after it, ordered by logical time. Replay favors
forward progress: duplicates are no-ops and other per-entry failures are
logged and skipped.
"""

from dataclasses import dataclass, field
from typing import Any, Iterator, List, Optional

from distcoord.durability.checkpoint import Checkpoint, CheckpointStore, verify_integrity
from distcoord.durability.oplog import OperationLog, replay_order
from distcoord.errors import CheckpointIntegrityError, DuplicateOperationError, RecoveryError
from distcoord.handlers import BusinessHandlers, RestoredRecord, call_handler
from distcoord.utils.logging import get_logger

logger = get_logger(__name__)

NO_PRIOR_STATE = "no prior state"


@dataclass
class RecoveryResult:
    """
    Outcome of one recovery attempt.

    Attributes:
        restored: True if a checkpoint was restored
        checkpoint_id: Restored checkpoint id
        records_restored: Snapshot records applied
        records_failed: Snapshot records whose upsert failed
        replayed: Log entries applied
        duplicates: Log entries skipped as already applied
        failed: Log entries whose replay failed
        reason: Why nothing was restored
    """
    restored: bool
    checkpoint_id: Optional[str] = None
    records_restored: int = 0
    records_failed: int = 0
    replayed: int = 0
    duplicates: int = 0
    failed: int = 0
    reason: Optional[str] = None
    failed_entry_ids: List[str] = field(default_factory=list)


def iter_snapshot_records(checkpoint: Checkpoint) -> Iterator[RestoredRecord]:
    """
    Yield the records held by a checkpoint snapshot.

    A list payload belongs to a collection named after the checkpoint type.
    A mapping payload holds one list per collection; non-list values
    (metadata) are not records.

    Raises:
        RecoveryError: If the payload is neither, raised before any record
            is yielded
    """
    payload: Any = checkpoint.snapshot_payload

    if payload is None:
        return

    if isinstance(payload, list):
        for record in payload:
            yield RestoredRecord(collection=checkpoint.type, data=record)
        return

    if isinstance(payload, dict):
        for collection in sorted(payload):
            records = payload[collection]
            if isinstance(records, list):
                for record in records:
                    yield RestoredRecord(collection=collection, data=record)
        return

    raise RecoveryError(
        f"Checkpoint {checkpoint.id} snapshot is a {type(payload).__name__}, "
        "expected a list or a mapping of collections"
    )


class RecoveryCoordinator:
    """
    Restores checkpoint + log state once at node startup.
    """

    def __init__(
        self,
        checkpoints: CheckpointStore,
        oplog: OperationLog,
        handlers: BusinessHandlers,
    ):
        """
        Initialize recovery coordinator.

        Args:
            checkpoints: Checkpoint store
            oplog: Operation log
            handlers: Business-layer restore/replay entry points
        """
        self.checkpoints = checkpoints
        self.oplog = oplog
        self.handlers = handlers
        self.last_result: Optional[RecoveryResult] = None

    async def recover(self) -> RecoveryResult:
        """
        Restore the latest checkpoint and replay later operations.

        Returns:
            Recovery result; restored=False when there is no prior state

        Raises:
            CheckpointIntegrityError: If the latest checkpoint is corrupted.
                No business callback has been invoked when this is raised.
            RecoveryError: If the snapshot payload has no record layout.
                No business callback has been invoked when this is raised.
        """
        logger.info("Starting recovery")

        checkpoint = self.checkpoints.find_latest_checkpoint()

        if checkpoint is None:
            logger.info("No checkpoint found, starting fresh")
            self.last_result = RecoveryResult(restored=False, reason=NO_PRIOR_STATE)
            return self.last_result

        try:
            verify_integrity(checkpoint)
        except CheckpointIntegrityError as e:
            logger.error(
                "Checkpoint integrity check failed",
                checkpoint_id=checkpoint.id,
                expected=e.expected,
                actual=e.actual,
            )
            raise

        try:
            records = list(iter_snapshot_records(checkpoint))
        except RecoveryError as e:
            logger.error("Checkpoint snapshot unusable", checkpoint_id=checkpoint.id, error=str(e))
            raise

        result = RecoveryResult(restored=True, checkpoint_id=checkpoint.id)

        logger.info("Recovering from checkpoint", checkpoint_id=checkpoint.id)

        await self._restore(checkpoint, records, result)
        await self._replay_since(checkpoint, result)

        logger.info(
            "Recovery completed",
            checkpoint_id=checkpoint.id,
            records_restored=result.records_restored,
            replayed=result.replayed,
            duplicates=result.duplicates,
            failed=result.failed,
        )

        self.last_result = result
        return result

    async def _restore(
        self, checkpoint: Checkpoint, records: List[RestoredRecord], result: RecoveryResult
    ) -> None:
        for record in records:
            try:
                await call_handler(self.handlers.apply_restored_record, record)
                result.records_restored += 1
            except Exception as e:
                result.records_failed += 1
                logger.error(
                    "Failed to restore record",
                    checkpoint_id=checkpoint.id,
                    collection=record.collection,
                    error=str(e),
                )

    async def _replay_since(self, checkpoint: Checkpoint, result: RecoveryResult) -> None:
        entries = replay_order(self.oplog.read_since(checkpoint.wall_clock_time))

        logger.info(
            "Replaying operations since checkpoint",
            checkpoint_id=checkpoint.id,
            operations=len(entries),
        )

        for entry in entries:
            try:
                await call_handler(self.handlers.apply_replayed_operation, entry)
                result.replayed += 1
            except DuplicateOperationError:
                result.duplicates += 1
                logger.debug("Skipped duplicate operation", operation_id=entry.id)
            except Exception as e:
                result.failed += 1
                result.failed_entry_ids.append(entry.id)
                logger.error(
                    "Failed to replay operation",
                    operation_id=entry.id,
                    operation_type=entry.operation_type,
                    error=str(e),
                )
