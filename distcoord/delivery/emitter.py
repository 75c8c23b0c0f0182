"""
Causally stamped fan-out of real-time events.

Every outgoing event is stamped once with the sender's logical time and
queued for reliable delivery to each resolved destination. Incoming
events must pass through receive() so the local clock observes the
sender's time before anything else is emitted.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Union

from distcoord.clock.lamport import LogicalClock
from distcoord.delivery.queue import ReliableDeliveryQueue
from distcoord.utils.logging import get_logger

logger = get_logger(__name__)

Selector = Union[str, Sequence[str], Callable[[], Any]]
Resolver = Callable[[str], Any]


class ReliableEmitter:
    """
    Resolves destination selectors and pushes stamped events.

    A selector is either a list of concrete destinations, a callable
    returning them, or a name (role, room, user) handed to the resolver.
    """

    def __init__(
        self,
        queue: ReliableDeliveryQueue,
        clock: LogicalClock,
        node_id: int,
        resolver: Optional[Resolver] = None,
    ):
        """
        Initialize emitter.

        Args:
            queue: Delivery queue
            clock: Node logical clock
            node_id: Origin node id stamped into every event
            resolver: Maps a selector name to destinations (sync or async)
        """
        self.queue = queue
        self.clock = clock
        self.node_id = node_id
        self.resolver = resolver

    async def _resolve(self, selector: Selector) -> List[str]:
        if isinstance(selector, (list, tuple, set, frozenset)):
            result: Any = selector
        elif callable(selector):
            result = selector()
        elif self.resolver is not None:
            result = self.resolver(selector)
        else:
            result = [selector]

        if asyncio.iscoroutine(result):
            result = await result

        return list(result or [])

    async def emit_reliable(
        self,
        destination_selector: Selector,
        event: str,
        payload: Dict[str, Any],
    ) -> List[str]:
        """
        Fire-and-forget push of an event to every selected destination.

        Args:
            destination_selector: Destinations or a selector for the resolver
            event: Event name
            payload: Event body

        Returns:
            Ids of the queued messages (empty when nothing was resolved)
        """
        try:
            destinations = await self._resolve(destination_selector)
        except Exception as e:
            logger.error(
                "Failed to resolve destinations",
                selector=str(destination_selector),
                event_name=event,
                error=str(e),
            )
            return []

        stamped = self.clock.stamp(payload)
        stamped["timestamp"] = datetime.now(timezone.utc).isoformat()
        stamped["node_id"] = self.node_id

        logger.debug(
            "Emitting reliable event",
            event_name=event,
            destinations=len(destinations),
            lamport_time=stamped["lamport_time"],
        )

        return [self.queue.send(destination, event, stamped) for destination in destinations]

    def receive(self, payload: Dict[str, Any]) -> int:
        """
        Merge the logical time carried by an incoming event.

        Returns:
            Local logical time after the receive event
        """
        return self.clock.observe_payload(payload)

    async def broadcast(
        self,
        destinations: Iterable[str],
        event: str,
        payload: Dict[str, Any],
    ) -> List[str]:
        """Emit to an explicit destination list."""
        return await self.emit_reliable(list(destinations), event, payload)
