"""
Checkpoint store.

Persists periodic full-state snapshots, one JSON record per
(type, creation time), each carrying a SHA-256 digest of its payload.
The store also tracks the "latest" checkpoint and, when this node holds
leadership, fans new checkpoints out to peers.
"""

import hashlib
import json
import re
import time
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from distcoord.durability.oplog import format_wall_clock, parse_wall_clock, utc_now
from distcoord.errors import CheckpointIntegrityError
from distcoord.handlers import call_handler
from distcoord.utils.logging import get_logger
from distcoord.utils.scheduler import RecurringTask, SleepFn

logger = get_logger(__name__)

LATEST_POINTER = "LATEST"
FULL_SYSTEM = "full-system"

# "<type>_<epoch ms>"; ids name files, so no separators or dots
CHECKPOINT_ID_PATTERN = re.compile(r"[\w-]+_\d+")


@dataclass
class CheckpointConfig:
    """
    Configuration for checkpointing.

    Attributes:
        interval_s: Seconds between leader checkpoints
        sync_interval_s: Seconds between leader sync verifications
        snapshot_window_days: Recent-history window requested from the snapshot provider
    """
    interval_s: float = 300.0
    sync_interval_s: float = 600.0
    snapshot_window_days: int = 7


def canonical_json(payload: Any) -> str:
    """Deterministic JSON encoding used for digests."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)


def compute_digest(payload: Any) -> str:
    """SHA-256 hex digest of a snapshot payload."""
    return hashlib.sha256(canonical_json(payload).encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class Checkpoint:
    """
    Immutable point-in-time snapshot.

    Attributes:
        id: "{type}_{epoch_ms}"
        type: Checkpoint type (e.g. "full-system", "emergency")
        wall_clock_time: UTC ISO-8601 creation time
        origin_node_id: Node that created the snapshot
        snapshot_payload: JSON-compatible snapshot data
        operation_count_at_snapshot: Operations appended before the snapshot
        integrity_digest: compute_digest(snapshot_payload)
    """
    id: str
    type: str
    wall_clock_time: str
    origin_node_id: int
    snapshot_payload: Any
    operation_count_at_snapshot: int
    integrity_digest: str

    @property
    def created_at(self) -> datetime:
        return parse_wall_clock(self.wall_clock_time)

    def sort_key(self) -> Tuple[datetime, str]:
        return (self.created_at, self.id)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Checkpoint":
        """Deserialize from dictionary."""
        return cls(
            id=d["id"],
            type=d["type"],
            wall_clock_time=d["wall_clock_time"],
            origin_node_id=int(d["origin_node_id"]),
            snapshot_payload=d.get("snapshot_payload"),
            operation_count_at_snapshot=int(d.get("operation_count_at_snapshot", 0)),
            integrity_digest=d["integrity_digest"],
        )


def verify_integrity(checkpoint: Checkpoint) -> None:
    """
    Check a checkpoint's digest against its payload.

    Raises:
        CheckpointIntegrityError: If the digest does not match
    """
    actual = compute_digest(checkpoint.snapshot_payload)
    if actual != checkpoint.integrity_digest:
        raise CheckpointIntegrityError(checkpoint.id, checkpoint.integrity_digest, actual)


Replicator = Callable[[Checkpoint], Awaitable[Any]]


class CheckpointStore:
    """
    Durable checkpoint records with a "latest" pointer.

    Fan-out to peers happens only while is_leader() is true at creation
    time; on followers it is a no-op.
    """

    def __init__(
        self,
        directory: Path,
        node_id: int,
        is_leader: Callable[[], bool] = lambda: False,
        operation_count: Callable[[], int] = lambda: 0,
        replicator: Optional[Replicator] = None,
        now_fn: Callable[[], datetime] = utc_now,
    ):
        """
        Initialize checkpoint store.

        Args:
            directory: Directory holding checkpoint records
            node_id: This node's id
            is_leader: Reads current leadership
            operation_count: Reads the operation log count
            replicator: Async fan-out to peers
            now_fn: Wall clock (injectable for tests)
        """
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self.node_id = node_id
        self._is_leader = is_leader
        self._operation_count = operation_count
        self.replicator = replicator
        self._now = now_fn

        self.latest: Optional[Checkpoint] = None
        self._last_id_ms = 0

        logger.info("Initialized checkpoint store", directory=str(self.directory))

    def _next_id(self, checkpoint_type: str) -> str:
        # ids stay unique when two checkpoints land in the same millisecond
        id_ms = max(int(time.time() * 1000), self._last_id_ms + 1)
        self._last_id_ms = id_ms
        return f"{checkpoint_type}_{id_ms}"

    def _path_for(self, checkpoint_id: str) -> Path:
        if not CHECKPOINT_ID_PATTERN.fullmatch(checkpoint_id):
            raise ValueError(f"Invalid checkpoint id: {checkpoint_id!r}")
        return self.directory / f"{checkpoint_id}.json"

    def _persist(self, checkpoint: Checkpoint) -> None:
        path = self._path_for(checkpoint.id)

        tmp_path = path.with_suffix(".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(checkpoint.to_dict(), f, indent=2)
        tmp_path.rename(path)

        self._update_latest(checkpoint)

    def _update_latest(self, checkpoint: Checkpoint) -> None:
        if self.latest is not None and self.latest.sort_key() >= checkpoint.sort_key():
            return

        self.latest = checkpoint

        pointer = self.directory / LATEST_POINTER
        try:
            pointer.write_text(checkpoint.id, encoding="utf-8")
        except OSError as e:
            logger.error("Failed to update latest pointer", error=str(e))

    async def create_checkpoint(self, checkpoint_type: str, snapshot_payload: Any) -> Checkpoint:
        """
        Persist a new checkpoint and fan it out when leader.

        Args:
            checkpoint_type: Checkpoint type
            snapshot_payload: JSON-compatible snapshot data

        Returns:
            The stored checkpoint

        Raises:
            OSError: If the record cannot be written
        """
        # round-trip so the stored payload and its digest use the same encoding
        payload = json.loads(json.dumps(snapshot_payload, default=str))

        checkpoint = Checkpoint(
            id=self._next_id(checkpoint_type),
            type=checkpoint_type,
            wall_clock_time=format_wall_clock(self._now()),
            origin_node_id=self.node_id,
            snapshot_payload=payload,
            operation_count_at_snapshot=self._operation_count(),
            integrity_digest=compute_digest(payload),
        )

        self._persist(checkpoint)

        logger.info(
            "Checkpoint created",
            checkpoint_id=checkpoint.id,
            checkpoint_type=checkpoint_type,
            operation_count=checkpoint.operation_count_at_snapshot,
        )

        await self.replicate(checkpoint)

        return checkpoint

    async def replicate(self, checkpoint: Checkpoint) -> bool:
        """
        Fan a checkpoint out to peers when this node is leader.

        Returns:
            True if fan-out was attempted
        """
        if not self._is_leader() or self.replicator is None:
            return False

        try:
            await self.replicator(checkpoint)
        except Exception as e:
            logger.error(
                "Checkpoint replication failed",
                checkpoint_id=checkpoint.id,
                error=str(e),
            )

        return True

    def store_replica(self, record: Dict[str, Any]) -> Checkpoint:
        """
        Persist a checkpoint received from the leader.

        Raises:
            CheckpointIntegrityError: If the record's digest does not match
            ValueError: If the record id is not a plain checkpoint id
        """
        checkpoint = Checkpoint.from_dict(record)
        verify_integrity(checkpoint)

        self._persist(checkpoint)

        logger.info(
            "Stored replicated checkpoint",
            checkpoint_id=checkpoint.id,
            origin_node_id=checkpoint.origin_node_id,
        )

        return checkpoint

    def load(self, checkpoint_id: str) -> Optional[Checkpoint]:
        """Load a single checkpoint record by id."""
        path = self._path_for(checkpoint_id)
        if not path.exists():
            return None
        with open(path, "r", encoding="utf-8") as f:
            return Checkpoint.from_dict(json.load(f))

    def list_checkpoints(self) -> List[Checkpoint]:
        """Load every readable checkpoint record, oldest first."""
        checkpoints = []

        for path in self.directory.glob("*.json"):
            try:
                with open(path, "r", encoding="utf-8") as f:
                    checkpoints.append(Checkpoint.from_dict(json.load(f)))
            except (OSError, ValueError, KeyError, TypeError) as e:
                logger.warning(
                    "Skipping unreadable checkpoint",
                    path=str(path),
                    error=str(e),
                )

        return sorted(checkpoints, key=Checkpoint.sort_key)

    def find_latest_checkpoint(self) -> Optional[Checkpoint]:
        """
        Scan persisted records for the newest checkpoint.

        Returns:
            Checkpoint with the greatest creation time, or None if empty
        """
        checkpoints = self.list_checkpoints()
        if not checkpoints:
            return None

        latest = checkpoints[-1]
        self._update_latest(latest)
        return latest


SnapshotProvider = Callable[[int], Any]


class CheckpointScheduler:
    """
    Fixed-interval checkpoint creation, gated on leadership at run time.
    """

    def __init__(
        self,
        store: CheckpointStore,
        snapshot: SnapshotProvider,
        is_leader: Callable[[], bool],
        interval: float = 300.0,
        window_days: int = 7,
        sleep: Optional[SleepFn] = None,
    ):
        """
        Initialize checkpoint scheduler.

        Args:
            store: Checkpoint store
            snapshot: Business snapshot provider, called with window_days
            is_leader: Reads current leadership
            interval: Seconds between checkpoints
            window_days: Recent-history window passed to the snapshot provider
            sleep: Sleep function (injectable for tests)
        """
        self.store = store
        self.snapshot = snapshot
        self.is_leader = is_leader
        self.window_days = window_days
        self.task = RecurringTask("checkpoint", interval, self.run, sleep=sleep)

    async def run(self) -> Optional[Checkpoint]:
        """Create a full-system checkpoint if this node is leader."""
        if not self.is_leader():
            return None

        payload = await call_handler(self.snapshot, self.window_days)

        return await self.store.create_checkpoint(FULL_SYSTEM, payload)
