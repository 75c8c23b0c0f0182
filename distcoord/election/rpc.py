"""
Peer RPC messages.

Liveness probe and step-down directive exchanged between peers, plus
the replication requests the leader pushes to followers.
"""

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional


@dataclass
class HealthResponse:
    """
    Liveness probe response.

    Attributes:
        healthy: Peer considers itself healthy
        node_id: Responding peer id
        is_leader: Peer currently holds leadership
        leader_id: Leader known to the peer
        state: Peer election state
        lamport_time: Peer logical time
        latest_checkpoint_digest: Digest of the peer's latest checkpoint
        operation_count: Operations appended on the peer
    """
    healthy: bool
    node_id: int
    is_leader: bool = False
    leader_id: Optional[int] = None
    state: str = "electing"
    lamport_time: int = 0
    latest_checkpoint_digest: Optional[str] = None
    operation_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "HealthResponse":
        return cls(
            healthy=bool(d.get("healthy", False)),
            node_id=int(d["node_id"]),
            is_leader=bool(d.get("is_leader", False)),
            leader_id=d.get("leader_id"),
            state=d.get("state", "electing"),
            lamport_time=int(d.get("lamport_time", 0)),
            latest_checkpoint_digest=d.get("latest_checkpoint_digest"),
            operation_count=int(d.get("operation_count", 0)),
        )


@dataclass
class StepDownRequest:
    """
    Directive sent by a new leader to every lower-id peer.

    Attributes:
        claimant_id: Id of the node claiming leadership
        lamport_time: Sender logical time
    """
    claimant_id: int
    lamport_time: int = 0

    def to_dict(self) -> Dict[str, Any]:
        # wire name follows the peer endpoint contract
        return {"claimantId": self.claimant_id, "lamport_time": self.lamport_time}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "StepDownRequest":
        claimant = d.get("claimantId", d.get("claimant_id"))
        if claimant is None:
            raise ValueError("step-down request without claimantId")
        return cls(claimant_id=int(claimant), lamport_time=int(d.get("lamport_time", 0)))


@dataclass
class StepDownResponse:
    """
    Step-down directive response.

    Attributes:
        accepted: Receiver yielded to the claimant
        node_id: Receiver id
        lamport_time: Receiver logical time
    """
    accepted: bool
    node_id: int
    lamport_time: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "StepDownResponse":
        return cls(
            accepted=bool(d.get("accepted", False)),
            node_id=int(d["node_id"]),
            lamport_time=int(d.get("lamport_time", 0)),
        )


@dataclass
class ReplicationRequest:
    """
    Checkpoint or operation pushed from the leader.

    Attributes:
        leader_id: Sending leader id
        record: Serialized Checkpoint or OperationLogEntry
        lamport_time: Sender logical time
    """
    leader_id: int
    record: Dict[str, Any] = field(default_factory=dict)
    lamport_time: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ReplicationRequest":
        return cls(
            leader_id=int(d["leader_id"]),
            record=d.get("record") or {},
            lamport_time=int(d.get("lamport_time", 0)),
        )


@dataclass
class ReplicationResponse:
    """
    Replication acknowledgment.

    Attributes:
        stored: Receiver stored the record
        node_id: Receiver id
        error: Failure reason when not stored
        lamport_time: Receiver logical time
    """
    stored: bool
    node_id: int
    error: Optional[str] = None
    lamport_time: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ReplicationResponse":
        return cls(
            stored=bool(d.get("stored", False)),
            node_id=int(d["node_id"]),
            error=d.get("error"),
            lamport_time=int(d.get("lamport_time", 0)),
        )
