"""
Peer wire format.

Peers talk gRPC without generated stubs: every method of the
distcoord.Peer service is a unary call whose request and response are
UTF-8 JSON objects.
"""

import json
from typing import Any, Dict

SERVICE_NAME = "distcoord.Peer"

HEALTH = "Health"
STEP_DOWN = "StepDown"
REPLICATE_CHECKPOINT = "ReplicateCheckpoint"
REPLICATE_OPERATION = "ReplicateOperation"

METHODS = (HEALTH, STEP_DOWN, REPLICATE_CHECKPOINT, REPLICATE_OPERATION)

CHANNEL_OPTIONS = [
    ("grpc.max_send_message_length", 100 * 1024 * 1024),  # 100MB
    ("grpc.max_receive_message_length", 100 * 1024 * 1024),
    ("grpc.keepalive_time_ms", 10000),
    ("grpc.keepalive_timeout_ms", 5000),
    ("grpc.http2.max_pings_without_data", 0),
    ("grpc.http2.min_time_between_pings_ms", 10000),
]


def method_path(method: str) -> str:
    """Full gRPC method path, e.g. /distcoord.Peer/Health."""
    return f"/{SERVICE_NAME}/{method}"


def encode(message: Dict[str, Any]) -> bytes:
    return json.dumps(message, default=str).encode("utf-8")


def decode(data: bytes) -> Dict[str, Any]:
    if not data:
        return {}
    message = json.loads(data.decode("utf-8"))
    if not isinstance(message, dict):
        raise ValueError("peer message must be a JSON object")
    return message
