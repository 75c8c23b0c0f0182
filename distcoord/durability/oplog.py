"""
Append-only operation log.

Records every committed business mutation tagged with logical time so it
can be replayed on top of a restored checkpoint. The log is kept twice:
- a bounded in-memory buffer (oldest entries evicted first)
- a durable JSON-lines file per calendar day (operations_YYYY-MM-DD.log)

Durable write failures are logged and never raised; the in-memory state
stays authoritative until restart.
"""

import json
import threading
import time
import uuid
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple, Union

from distcoord.clock.lamport import LAMPORT_FIELD, LogicalClock
from distcoord.utils.logging import get_logger

logger = get_logger(__name__)

PARTITION_PREFIX = "operations_"
PARTITION_SUFFIX = ".log"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_wall_clock(moment: datetime) -> str:
    """Format a datetime as a fixed-width UTC ISO-8601 string."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_wall_clock(value: Union[str, datetime]) -> datetime:
    """Parse a wall clock value; naive values are taken as UTC."""
    moment = value if isinstance(value, datetime) else datetime.fromisoformat(value)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


@dataclass(frozen=True)
class OperationLogEntry:
    """
    Single committed business operation.

    Attributes:
        id: Unique entry id
        wall_clock_time: UTC ISO-8601 time of the append
        origin_node_id: Node that committed the operation
        logical_time: Lamport time stamped at append
        operation_type: Business operation name (e.g. "attendance-mark")
        payload: Operation data needed to replay it
    """
    id: str
    wall_clock_time: str
    origin_node_id: int
    logical_time: int
    operation_type: str
    payload: Dict[str, Any] = field(default_factory=dict)

    def sort_key(self) -> Tuple[int, datetime, str]:
        """Replay order: logical time, then wall clock time, then id."""
        return (self.logical_time, parse_wall_clock(self.wall_clock_time), self.id)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "OperationLogEntry":
        """Deserialize from dictionary."""
        return cls(
            id=d["id"],
            wall_clock_time=d["wall_clock_time"],
            origin_node_id=int(d["origin_node_id"]),
            logical_time=int(d["logical_time"]),
            operation_type=d["operation_type"],
            payload=d.get("payload") or {},
        )


def replay_order(entries: List[OperationLogEntry]) -> List[OperationLogEntry]:
    """Return entries sorted into replay order."""
    return sorted(entries, key=OperationLogEntry.sort_key)


class OperationLog:
    """
    Bounded in-memory buffer backed by day-partitioned durable files.

    Appends may come from the event loop or from batch worker threads, so
    the buffer and the file writes are guarded by one lock.
    """

    def __init__(
        self,
        directory: Path,
        node_id: int,
        clock: LogicalClock,
        max_buffer_size: int = 1000,
        now_fn: Callable[[], datetime] = utc_now,
    ):
        """
        Initialize operation log.

        Args:
            directory: Directory holding the day partitions
            node_id: This node's id, stamped as origin
            clock: Node logical clock
            max_buffer_size: In-memory entries kept before eviction
            now_fn: Wall clock (injectable for tests)
        """
        if max_buffer_size < 1:
            raise ValueError(f"max_buffer_size must be >= 1, got {max_buffer_size}")

        self.directory = Path(directory)
        self.node_id = node_id
        self.clock = clock
        self.max_buffer_size = max_buffer_size
        self._now = now_fn

        self._buffer: Deque[OperationLogEntry] = deque(maxlen=max_buffer_size)
        self._lock = threading.RLock()
        self._listeners: List[Callable[[OperationLogEntry], Any]] = []

        self.operation_count = 0
        self.write_failures = 0

        try:
            self.directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.error(
                "Failed to create operation log directory",
                directory=str(self.directory),
                error=str(e),
            )

        logger.info(
            "Initialized operation log",
            directory=str(self.directory),
            max_buffer_size=max_buffer_size,
        )

    def partition_path(self, day: date) -> Path:
        """Path of the durable partition for a calendar day."""
        return self.directory / f"{PARTITION_PREFIX}{day.isoformat()}{PARTITION_SUFFIX}"

    def on_append(self, callback: Callable[[OperationLogEntry], Any]) -> None:
        """Register a listener called with every locally appended entry."""
        self._listeners.append(callback)

    def append_operation(
        self,
        operation_type: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> OperationLogEntry:
        """
        Record a committed business operation.

        If the payload carries a logical time from another process, the clock
        observes it before the entry is stamped.

        Args:
            operation_type: Business operation name
            payload: Operation data

        Returns:
            The appended entry
        """
        payload = dict(payload or {})

        received = payload.get(LAMPORT_FIELD)
        if isinstance(received, int) and not isinstance(received, bool) and received >= 0:
            self.clock.observe(received)

        now = self._now()
        entry = OperationLogEntry(
            id=f"op_{int(time.time() * 1000)}_{uuid.uuid4().hex[:12]}",
            wall_clock_time=format_wall_clock(now),
            origin_node_id=self.node_id,
            logical_time=self.clock.tick(),
            operation_type=operation_type,
            payload=payload,
        )

        with self._lock:
            self._buffer.append(entry)
            self.operation_count += 1
            self._write_durable(entry, now)

        logger.debug(
            "Appended operation",
            operation_id=entry.id,
            operation_type=operation_type,
            logical_time=entry.logical_time,
        )

        for callback in self._listeners:
            try:
                callback(entry)
            except Exception as e:
                logger.error(
                    "Operation listener failed",
                    operation_id=entry.id,
                    error=str(e),
                )

        return entry

    def append_replica(self, entry: OperationLogEntry) -> bool:
        """
        Store an entry replicated from another node.

        The entry keeps its origin and logical time; the local clock observes
        that time. Entries already in the buffer are ignored.

        Returns:
            True if the entry was stored
        """
        self.clock.observe(entry.logical_time)

        with self._lock:
            if any(existing.id == entry.id for existing in self._buffer):
                return False

            self._buffer.append(entry)
            self._write_durable(entry, parse_wall_clock(entry.wall_clock_time))

        logger.debug(
            "Stored replicated operation",
            operation_id=entry.id,
            origin_node_id=entry.origin_node_id,
        )

        return True

    def _write_durable(self, entry: OperationLogEntry, moment: datetime) -> None:
        path = self.partition_path(moment.astimezone(timezone.utc).date())
        try:
            with open(path, "a", encoding="utf-8") as f:
                f.write(json.dumps(entry.to_dict(), default=str) + "\n")
        except (OSError, TypeError, ValueError) as e:
            self.write_failures += 1
            logger.error(
                "Failed to persist operation",
                operation_id=entry.id,
                path=str(path),
                error=str(e),
            )

    def _partitions(self) -> List[Tuple[date, Path]]:
        partitions = []
        if not self.directory.exists():
            return partitions

        for path in self.directory.glob(f"{PARTITION_PREFIX}*{PARTITION_SUFFIX}"):
            day_text = path.name[len(PARTITION_PREFIX):-len(PARTITION_SUFFIX)]
            try:
                partitions.append((date.fromisoformat(day_text), path))
            except ValueError:
                logger.warning("Ignoring unrecognized log partition", path=str(path))

        return sorted(partitions)

    def read_since(self, since: Union[str, datetime, None] = None) -> List[OperationLogEntry]:
        """
        Read durable entries with wall clock time strictly after `since`.

        Unparsable lines are skipped with a warning.

        Args:
            since: Exclusive lower bound; None reads everything

        Returns:
            Matching entries in file order
        """
        bound = parse_wall_clock(since) if since is not None else None
        entries: List[OperationLogEntry] = []

        for day, path in self._partitions():
            if bound is not None and day < bound.date():
                continue

            try:
                with open(path, "r", encoding="utf-8") as f:
                    lines = f.readlines()
            except OSError as e:
                logger.error("Failed to read log partition", path=str(path), error=str(e))
                continue

            for line_number, line in enumerate(lines, start=1):
                line = line.strip()
                if not line:
                    continue

                try:
                    entry = OperationLogEntry.from_dict(json.loads(line))
                    moment = parse_wall_clock(entry.wall_clock_time)
                except (ValueError, KeyError, TypeError) as e:
                    logger.warning(
                        "Skipping unparsable log line",
                        path=str(path),
                        line=line_number,
                        error=str(e),
                    )
                    continue

                if bound is None or moment > bound:
                    entries.append(entry)

        return entries

    def recent(self, limit: Optional[int] = None) -> List[OperationLogEntry]:
        """Entries currently held in memory, oldest first."""
        with self._lock:
            entries = list(self._buffer)
        return entries[-limit:] if limit else entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._buffer)
