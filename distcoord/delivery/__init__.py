"""
Reliable delivery of real-time events.

Retry/backoff push queue plus a causally stamped emitter on top of it.
"""

from distcoord.delivery.emitter import ReliableEmitter
from distcoord.delivery.queue import (
    MESSAGE_DELIVERED,
    MESSAGE_DROPPED,
    DeliveryConfig,
    PendingMessage,
    ReliableDeliveryQueue,
)

__all__ = [
    "DeliveryConfig",
    "MESSAGE_DELIVERED",
    "MESSAGE_DROPPED",
    "PendingMessage",
    "ReliableDeliveryQueue",
    "ReliableEmitter",
]
