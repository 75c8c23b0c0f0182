"""Bully leader election over a static peer set."""

from distcoord.election.elector import LeaderElector
from distcoord.election.rpc import (
    HealthResponse,
    ReplicationRequest,
    ReplicationResponse,
    StepDownRequest,
    StepDownResponse,
)
from distcoord.election.state import (
    ElectionConfig,
    ElectionState,
    LeaderState,
    PeerNode,
    PeerSet,
)

__all__ = [
    "ElectionConfig",
    "ElectionState",
    "HealthResponse",
    "LeaderElector",
    "LeaderState",
    "PeerNode",
    "PeerSet",
    "ReplicationRequest",
    "ReplicationResponse",
    "StepDownRequest",
    "StepDownResponse",
]
