"""
Lamport logical clock.

Gives a partial causal order across processes without synchronized
physical clocks. State is process-local and is not persisted: a restart
resets the counter to zero.
"""

import threading
from typing import Any, Dict

from distcoord.utils.logging import get_logger

logger = get_logger(__name__)

LAMPORT_FIELD = "lamport_time"


class LogicalClock:
    """
    Monotonic causal counter.

    Every local event calls tick(); every receipt of a message carrying a
    remote timestamp calls observe() before any further event is emitted.
    """

    def __init__(self, initial: int = 0):
        if initial < 0:
            raise ValueError(f"initial time must be non-negative, got {initial}")

        self._time = initial
        self._lock = threading.Lock()

    def tick(self) -> int:
        """
        Advance the clock for a local or send event.

        Returns:
            A value strictly greater than any previously returned value
        """
        with self._lock:
            self._time += 1
            return self._time

    def observe(self, received_time: int) -> int:
        """
        Merge a timestamp received from another process.

        Args:
            received_time: Logical time carried by the incoming message

        Returns:
            max(local, received_time) + 1
        """
        if isinstance(received_time, bool) or not isinstance(received_time, int):
            raise ValueError(f"logical time must be an int, got {received_time!r}")
        if received_time < 0:
            raise ValueError(f"logical time must be non-negative, got {received_time}")

        with self._lock:
            before = self._time
            self._time = max(self._time, received_time) + 1

            logger.debug(
                "Observed remote logical time",
                received=received_time,
                before=before,
                after=self._time,
            )

            return self._time

    def current(self) -> int:
        """Return the current time without advancing it."""
        with self._lock:
            return self._time

    def stamp(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Tick and return a copy of payload carrying the new logical time.

        Args:
            payload: Outgoing message body

        Returns:
            Copy of payload with the lamport_time field set
        """
        stamped = dict(payload)
        stamped[LAMPORT_FIELD] = self.tick()
        return stamped

    def observe_payload(self, payload: Dict[str, Any]) -> int:
        """
        Observe the logical time carried by an incoming payload.

        Payloads without a timestamp count as time zero.
        """
        return self.observe(int(payload.get(LAMPORT_FIELD) or 0))

    def __repr__(self) -> str:
        return f"LogicalClock(time={self._time})"
