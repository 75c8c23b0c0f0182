"""
Best-effort reliable push delivery.

Wraps a single-recipient transport with linear retry/backoff. Delivery is
fire-and-forget: failures are never raised back to the sender. Messages
that exhaust their attempts are dropped and announced through the
"message-dropped" event.
"""

import asyncio
import time
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from distcoord.utils.logging import get_logger

logger = get_logger(__name__)

Deliver = Callable[[str, str, Dict[str, Any]], Awaitable[None]]
SleepFn = Callable[[float], Awaitable[None]]

MESSAGE_DELIVERED = "message-delivered"
MESSAGE_DROPPED = "message-dropped"


@dataclass
class DeliveryConfig:
    """
    Configuration for reliable delivery.

    Attributes:
        max_attempts: Total delivery attempts before a message is dropped
        base_delay_s: Backoff unit; the wait after attempt n is n * base_delay_s
        grace_window_s: Age after which any entry is purged regardless of outcome
        delivered_retention_s: How long a delivered, unacknowledged entry is kept
        cleanup_interval_s: Interval of the purge task run by the node
    """
    max_attempts: int = 3
    base_delay_s: float = 1.0
    grace_window_s: float = 300.0
    delivered_retention_s: float = 5.0
    cleanup_interval_s: float = 5.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.base_delay_s < 0:
            raise ValueError(f"base_delay_s must be >= 0, got {self.base_delay_s}")


@dataclass
class PendingMessage:
    """
    Message awaiting delivery or acknowledgment.

    Attributes:
        id: Message id, also sent to the recipient for acknowledgment
        destination: Recipient channel identifier
        event: Event name
        payload: Event body
        attempts: Delivery attempts made so far
        created_at: Epoch seconds when the message was registered
        delivered_at: Epoch seconds of the successful attempt, if any
    """
    id: str
    destination: str
    event: str
    payload: Dict[str, Any]
    attempts: int = 0
    created_at: float = field(default_factory=time.time)
    delivered_at: Optional[float] = None

    @property
    def delivered(self) -> bool:
        return self.delivered_at is not None


def new_message_id() -> str:
    """Generate a unique message id."""
    return f"msg_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"


class ReliableDeliveryQueue:
    """
    Retry/backoff wrapper around a push transport.

    Each send() starts an independent delivery coroutine:
    - attempt delivery through the injected transport
    - on failure wait attempts * base_delay_s and try again
    - after max_attempts failures drop the message and emit MESSAGE_DROPPED
    """

    def __init__(
        self,
        deliver: Deliver,
        config: Optional[DeliveryConfig] = None,
        sleep: Optional[SleepFn] = None,
        time_fn: Callable[[], float] = time.time,
    ):
        """
        Initialize delivery queue.

        Args:
            deliver: Async transport callable (destination, event, payload)
            config: Delivery configuration
            sleep: Sleep function (injectable for tests)
            time_fn: Wall clock in epoch seconds (injectable for tests)
        """
        self._deliver = deliver
        self.config = config or DeliveryConfig()
        self._sleep = sleep or asyncio.sleep
        self._time = time_fn

        self._pending: Dict[str, PendingMessage] = {}
        self._inflight: Set[asyncio.Task] = set()
        self._listeners: Dict[str, List[Callable]] = defaultdict(list)

        self.delivered_count = 0
        self.dropped_count = 0

        logger.info(
            "Initialized delivery queue",
            max_attempts=self.config.max_attempts,
            base_delay_s=self.config.base_delay_s,
        )

    def on(self, event: str, callback: Callable[..., Any]) -> None:
        """
        Register a listener for queue events.

        Args:
            event: MESSAGE_DELIVERED or MESSAGE_DROPPED
            callback: Called with the PendingMessage (and the error for drops)
        """
        self._listeners[event].append(callback)

    def _emit(self, event: str, *args: Any) -> None:
        for callback in self._listeners[event]:
            try:
                callback(*args)
            except Exception as e:
                logger.error(
                    "Delivery listener failed",
                    queue_event=event,
                    error=str(e),
                )

    def send(
        self,
        destination: str,
        event: str,
        payload: Dict[str, Any],
        message_id: Optional[str] = None,
    ) -> str:
        """
        Register a message and start delivering it.

        Must be called with a running event loop. Never raises delivery errors.

        Args:
            destination: Recipient channel identifier
            event: Event name
            payload: Event body
            message_id: Explicit id (generated when omitted)

        Returns:
            Message id
        """
        msg_id = message_id or new_message_id()

        self._pending[msg_id] = PendingMessage(
            id=msg_id,
            destination=destination,
            event=event,
            payload=payload,
            created_at=self._time(),
        )

        task = asyncio.create_task(self._delivery_loop(msg_id))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

        return msg_id

    async def _delivery_loop(self, msg_id: str) -> None:
        while True:
            message = self._pending.get(msg_id)
            if message is None:
                # acknowledged or purged while waiting
                return

            message.attempts += 1

            try:
                await self._deliver(message.destination, message.event, message.payload)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if message.attempts >= self.config.max_attempts:
                    self._pending.pop(msg_id, None)
                    self.dropped_count += 1

                    logger.error(
                        "Message dropped after all attempts",
                        message_id=msg_id,
                        destination=message.destination,
                        queue_event=message.event,
                        attempts=message.attempts,
                        error=str(e),
                    )

                    self._emit(MESSAGE_DROPPED, message, e)
                    return

                delay = message.attempts * self.config.base_delay_s

                logger.warning(
                    "Delivery failed, retrying",
                    message_id=msg_id,
                    destination=message.destination,
                    attempt=message.attempts,
                    delay_s=delay,
                    error=str(e),
                )

                await self._sleep(delay)
                continue

            message.delivered_at = self._time()
            self.delivered_count += 1

            if message.attempts > 1:
                logger.info(
                    "Message delivered after retry",
                    message_id=msg_id,
                    attempts=message.attempts,
                )

            self._emit(MESSAGE_DELIVERED, message)
            return

    def acknowledge(self, message_id: str) -> bool:
        """
        Remove a message once the recipient acknowledged it.

        Returns:
            True if the message was still pending
        """
        removed = self._pending.pop(message_id, None) is not None

        if removed:
            logger.debug("Message acknowledged", message_id=message_id)

        return removed

    def purge_expired(self, now: Optional[float] = None) -> int:
        """
        Remove entries past their retention to bound memory.

        Entries older than the grace window are removed regardless of
        outcome; delivered entries are removed after delivered_retention_s.

        Returns:
            Number of entries removed
        """
        now = self._time() if now is None else now

        expired = [
            msg_id
            for msg_id, message in self._pending.items()
            if now - message.created_at > self.config.grace_window_s
            or (
                message.delivered
                and now - message.delivered_at >= self.config.delivered_retention_s
            )
        ]

        for msg_id in expired:
            del self._pending[msg_id]

        if expired:
            logger.debug("Purged pending messages", count=len(expired))

        return len(expired)

    def get(self, message_id: str) -> Optional[PendingMessage]:
        return self._pending.get(message_id)

    def pending_count(self) -> int:
        return len(self._pending)

    async def drain(self) -> None:
        """Wait until every in-flight delivery has finished or been dropped."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)
