"""
Callback interface registered by the business layer.

The coordination core never imports business modules. At startup the
business layer hands in a BusinessHandlers instance; recovery, checkpoint
creation and startup connectivity call back through it.
"""

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Optional, Union

if TYPE_CHECKING:
    from distcoord.durability.oplog import OperationLogEntry

MaybeAwaitable = Union[Any, Awaitable[Any]]


@dataclass(frozen=True)
class RestoredRecord:
    """
    Record restored from a checkpoint snapshot.

    Attributes:
        collection: Snapshot collection the record came from (e.g. "attendance")
        data: Record body as stored in the snapshot
    """
    collection: str
    data: Any


@dataclass
class BusinessHandlers:
    """
    Business-layer entry points used by the coordination core.

    Attributes:
        apply_restored_record: Idempotent upsert of a RestoredRecord
        apply_replayed_operation: Idempotent application of an OperationLogEntry;
            raises DuplicateOperationError when the effect already exists
        snapshot: Returns a bounded recent-history payload for a window in days
        connect: Opens the business store; retried at startup
        deliver: Pushes one event to one real-time channel (destination, event, payload)
        resolve_destinations: Maps a selector name (role, room, user) to channels
        connection_factory: Opens a store connection for one batch chunk
    """
    apply_restored_record: Callable[[RestoredRecord], MaybeAwaitable]
    apply_replayed_operation: Callable[["OperationLogEntry"], MaybeAwaitable]
    snapshot: Optional[Callable[[int], MaybeAwaitable]] = None
    connect: Optional[Callable[[], MaybeAwaitable]] = None
    deliver: Optional[Callable[[str, str, Dict[str, Any]], Awaitable[None]]] = None
    resolve_destinations: Optional[Callable[[str], MaybeAwaitable]] = None
    connection_factory: Optional[Callable[[], Any]] = None


async def call_handler(handler: Callable[..., MaybeAwaitable], *args: Any) -> Any:
    """Invoke a sync or async handler and return its result."""
    result = handler(*args)
    if asyncio.iscoroutine(result) or isinstance(result, asyncio.Future):
        result = await result
    return result
