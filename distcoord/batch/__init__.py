"""Chunked parallel batch execution with deterministic reduction."""

from distcoord.batch.executor import (
    BatchConfig,
    BatchResult,
    Chunk,
    ChunkOutcome,
    ItemError,
    MapItems,
    ParallelBatchExecutor,
    PartialResult,
    make_chunks,
    map_items,
)
from distcoord.batch.reduce import (
    combine_ingestion,
    finalize_breakdown,
    merge_breakdowns,
    reduce_defaulter_results,
    reduce_department_summaries,
)

__all__ = [
    "BatchConfig",
    "BatchResult",
    "Chunk",
    "ChunkOutcome",
    "ItemError",
    "MapItems",
    "ParallelBatchExecutor",
    "PartialResult",
    "combine_ingestion",
    "finalize_breakdown",
    "make_chunks",
    "map_items",
    "merge_breakdowns",
    "reduce_defaulter_results",
    "reduce_department_summaries",
]
