"""
Chunked parallel batch execution.

Items are split into contiguous chunks, each chunk runs in its own
execution unit of a concurrent.futures pool with its own connection, and
the per-chunk outcomes are reduced in chunk-index order. A failing item
never aborts its siblings; a failing chunk never aborts other chunks.
"""

import asyncio
import os
import time
from concurrent.futures import Executor, ProcessPoolExecutor, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Sequence, Tuple

from distcoord.utils.logging import get_logger

logger = get_logger(__name__)

THREAD = "thread"
PROCESS = "process"


@dataclass
class BatchConfig:
    """
    Configuration for parallel batch execution.

    Attributes:
        mode: "thread" or "process"
        max_workers: Pool size (None means the CPU count)
        default_chunk_size: Chunk size used when the caller gives none
    """
    mode: str = THREAD
    max_workers: Optional[int] = None
    default_chunk_size: int = 20


@dataclass(frozen=True)
class Chunk:
    """
    Contiguous slice of a submitted batch.

    Attributes:
        index: Chunk position (0-based)
        start: Index of the chunk's first item in the whole batch
        items: Items in this chunk
    """
    index: int
    start: int
    items: Tuple[Any, ...]

    def __len__(self) -> int:
        return len(self.items)


@dataclass
class ItemError:
    """
    Failure of a single item.

    Attributes:
        index: Item index in the whole batch
        item: The failing item
        error: Error message
    """
    index: int
    item: Any
    error: str


@dataclass
class PartialResult:
    """
    What a worker returns for one chunk.

    Attributes:
        value: Chunk-level value handed to the reducer
        errors: Items of the chunk that failed
    """
    value: Any = None
    errors: List[ItemError] = field(default_factory=list)


@dataclass
class ChunkOutcome:
    """
    Result of running one chunk: a partial result, or a tagged error list
    when the whole chunk failed.
    """
    chunk_index: int
    size: int
    partial: Optional[PartialResult] = None
    errors: List[ItemError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.partial is not None

    @property
    def failed(self) -> int:
        return len(self.errors)

    @property
    def processed(self) -> int:
        return self.size - self.failed


@dataclass
class BatchResult:
    """
    Reduced outcome of a batch.

    Attributes:
        total: Number of submitted items
        processed: Items that succeeded
        failed: Items that failed
        errors: Per-item errors, in item order
        values: Partial values of successful chunks, in chunk order
        value: Reducer output (None without a reducer)
        chunk_count: Number of chunks
        elapsed_ms: Wall time of the whole batch
    """
    total: int
    processed: int
    failed: int
    errors: List[ItemError]
    values: List[Any]
    value: Any = None
    chunk_count: int = 0
    elapsed_ms: float = 0.0


WorkerFn = Callable[[Chunk, Any], PartialResult]
ConnectionFactory = Callable[[], Any]
Reducer = Callable[[List[Any]], Any]


def make_chunks(items: Sequence[Any], chunk_size: int) -> List[Chunk]:
    """
    Split items into contiguous chunks of at most chunk_size.

    Raises:
        ValueError: If chunk_size < 1
    """
    if chunk_size < 1:
        raise ValueError(f"chunk_size must be >= 1, got {chunk_size}")

    return [
        Chunk(index=i, start=start, items=tuple(items[start:start + chunk_size]))
        for i, start in enumerate(range(0, len(items), chunk_size))
    ]


def _close(connection: Any) -> None:
    close = getattr(connection, "close", None)
    if callable(close):
        close()


def run_chunk(
    worker_fn: WorkerFn,
    connection_factory: Optional[ConnectionFactory],
    chunk: Chunk,
) -> ChunkOutcome:
    """
    Execution unit body: open a connection, run the worker, close it.

    Module-level so that process pools can pickle it.
    """
    connection = None
    try:
        if connection_factory is not None:
            connection = connection_factory()

        partial = worker_fn(chunk, connection)
        if not isinstance(partial, PartialResult):
            partial = PartialResult(value=partial)

        return ChunkOutcome(
            chunk_index=chunk.index,
            size=len(chunk),
            partial=partial,
            errors=list(partial.errors),
        )
    except Exception as e:
        return ChunkOutcome(
            chunk_index=chunk.index,
            size=len(chunk),
            errors=[
                ItemError(index=chunk.start + offset, item=item, error=str(e))
                for offset, item in enumerate(chunk.items)
            ],
        )
    finally:
        if connection is not None:
            try:
                _close(connection)
            except Exception as e:
                logger.warning("Failed to close chunk connection", chunk=chunk.index, error=str(e))


class MapItems:
    """
    Chunk worker applying a per-item function.

    The item function is called as item_fn(item, connection); each item's
    exception becomes an ItemError and the chunk value is the list of
    successful item results in item order.
    """

    def __init__(self, item_fn: Callable[[Any, Any], Any]):
        self.item_fn = item_fn

    def __call__(self, chunk: Chunk, connection: Any) -> PartialResult:
        values = []
        errors = []

        for offset, item in enumerate(chunk.items):
            try:
                values.append(self.item_fn(item, connection))
            except Exception as e:
                errors.append(ItemError(index=chunk.start + offset, item=item, error=str(e)))

        return PartialResult(value=values, errors=errors)


def map_items(item_fn: Callable[[Any, Any], Any]) -> MapItems:
    """
    Build a chunk worker from a per-item function.

    The worker pickles whenever item_fn does, so it also runs in
    process mode.
    """
    return MapItems(item_fn)


class ParallelBatchExecutor:
    """
    Runs chunked work on a thread or process pool from the event loop.

    In process mode, worker functions, connection factories and items
    must be picklable.
    """

    def __init__(
        self,
        mode: str = THREAD,
        max_workers: Optional[int] = None,
        connection_factory: Optional[ConnectionFactory] = None,
    ):
        """
        Initialize batch executor.

        Args:
            mode: "thread" or "process"
            max_workers: Pool size (defaults to the CPU count)
            connection_factory: Opens one connection per chunk
        """
        if mode not in (THREAD, PROCESS):
            raise ValueError(f"Unknown executor mode: {mode}")

        self.mode = mode
        self.max_workers = max_workers or os.cpu_count() or 1
        self.connection_factory = connection_factory

        self._pool: Optional[Executor] = None
        self.batches_run = 0

        logger.info(
            "ParallelBatchExecutor initialized",
            mode=mode,
            max_workers=self.max_workers,
        )

    def _get_pool(self) -> Executor:
        if self._pool is None:
            if self.mode == PROCESS:
                self._pool = ProcessPoolExecutor(max_workers=self.max_workers)
            else:
                self._pool = ThreadPoolExecutor(
                    max_workers=self.max_workers,
                    thread_name_prefix="batch",
                )
        return self._pool

    async def submit(
        self,
        items: Sequence[Any],
        chunk_size: int,
        worker_fn: WorkerFn,
        reducer: Optional[Reducer] = None,
    ) -> BatchResult:
        """
        Partition items, run every chunk concurrently, reduce the outcomes.

        Args:
            items: Items to process
            chunk_size: Maximum items per chunk
            worker_fn: Called as worker_fn(chunk, connection)
            reducer: Combines successful chunk values (in chunk order)

        Returns:
            Batch result with processed + failed == len(items)

        Raises:
            ValueError: If chunk_size < 1
        """
        chunks = make_chunks(items, chunk_size)
        started = time.monotonic()

        logger.info("Batch submitted", items=len(items), chunks=len(chunks), mode=self.mode)

        loop = asyncio.get_running_loop()
        pool = self._get_pool()

        outcomes = await asyncio.gather(*(
            loop.run_in_executor(pool, run_chunk, worker_fn, self.connection_factory, chunk)
            for chunk in chunks
        ))

        result = self._reduce(len(items), sorted(outcomes, key=lambda o: o.chunk_index), reducer)
        result.elapsed_ms = (time.monotonic() - started) * 1000
        self.batches_run += 1

        logger.info(
            "Batch completed",
            items=result.total,
            processed=result.processed,
            failed=result.failed,
            chunks=result.chunk_count,
            elapsed_ms=round(result.elapsed_ms, 2),
        )

        return result

    def _reduce(
        self,
        total: int,
        outcomes: List[ChunkOutcome],
        reducer: Optional[Reducer],
    ) -> BatchResult:
        errors: List[ItemError] = []
        values: List[Any] = []
        processed = 0

        for outcome in outcomes:
            processed += outcome.processed
            errors.extend(outcome.errors)
            if outcome.ok:
                values.append(outcome.partial.value)
            else:
                logger.warning(
                    "Chunk failed",
                    chunk=outcome.chunk_index,
                    items=outcome.size,
                    error=outcome.errors[0].error if outcome.errors else None,
                )

        return BatchResult(
            total=total,
            processed=processed,
            failed=len(errors),
            errors=sorted(errors, key=lambda e: e.index),
            values=values,
            value=reducer(values) if reducer else None,
            chunk_count=len(outcomes),
        )

    def shutdown(self, wait: bool = True) -> None:
        """Shut the pool down."""
        if self._pool is not None:
            self._pool.shutdown(wait=wait)
            self._pool = None

            logger.info("ParallelBatchExecutor shut down", batches_run=self.batches_run)
