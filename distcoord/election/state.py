"""
Election state and the static peer set.

Peers are numbered 1..K and configured out of band; membership never
changes at runtime. Peer ids map deterministically to network addresses
(base_port + id - 1 on a shared host).
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterator, List, Optional

from distcoord.utils.logging import get_logger

logger = get_logger(__name__)


class ElectionState(str, Enum):
    """Bully election states."""

    ELECTING = "electing"
    LEADER = "leader"
    FOLLOWER = "follower"


@dataclass
class ElectionConfig:
    """
    Timing configuration for leader election.

    Attributes:
        settle_delay_s: Delay before the first election at boot
        probe_timeout_s: Bound on one liveness probe
        step_down_timeout_s: Bound on one step-down notification
        heartbeat_interval_s: Leader heartbeat interval
        liveness_interval_s: Follower liveness check interval
    """
    settle_delay_s: float = 3.0
    probe_timeout_s: float = 2.0
    step_down_timeout_s: float = 1.0
    heartbeat_interval_s: float = 30.0
    liveness_interval_s: float = 10.0


@dataclass
class PeerNode:
    """
    Member of the static peer set.

    Attributes:
        numeric_id: Peer id (1..K); higher ids win elections
        health_endpoint: host:port of the peer's liveness endpoint
        last_known_alive: Epoch seconds of the last healthy probe
    """
    numeric_id: int
    health_endpoint: str
    last_known_alive: Optional[float] = None


@dataclass
class LeaderState:
    """
    Leadership as seen by one node.

    Attributes:
        current_leader_id: Id of the known leader, None while unknown
        is_self_leader: True if this node is the leader
    """
    current_leader_id: Optional[int] = None
    is_self_leader: bool = False


@dataclass
class PeerSet:
    """
    Fixed, numbered peer set.

    Attributes:
        count: Number of peers K (ids 1..K)
        host: Host shared by all peers
        base_port: Port of peer 1; peer n listens on base_port + n - 1
    """
    count: int
    host: str = "localhost"
    base_port: int = 5000
    _peers: Dict[int, PeerNode] = field(default_factory=dict, init=False, repr=False)

    def __post_init__(self):
        if self.count < 1:
            raise ValueError(f"peer count must be >= 1, got {self.count}")

        for peer_id in range(1, self.count + 1):
            self._peers[peer_id] = PeerNode(
                numeric_id=peer_id,
                health_endpoint=self.endpoint_for(peer_id),
            )

    def endpoint_for(self, peer_id: int) -> str:
        """Deterministic address of a peer."""
        return f"{self.host}:{self.base_port + peer_id - 1}"

    def port_for(self, peer_id: int) -> int:
        return self.base_port + peer_id - 1

    def get(self, peer_id: int) -> PeerNode:
        if peer_id not in self._peers:
            raise KeyError(f"Unknown peer id {peer_id}")
        return self._peers[peer_id]

    @property
    def ids(self) -> List[int]:
        return sorted(self._peers)

    @property
    def max_id(self) -> int:
        return self.count

    def higher_than(self, node_id: int) -> List[PeerNode]:
        """Peers with a strictly greater id, ascending."""
        return [self._peers[i] for i in self.ids if i > node_id]

    def lower_than(self, node_id: int) -> List[PeerNode]:
        """Peers with a strictly smaller id, ascending."""
        return [self._peers[i] for i in self.ids if i < node_id]

    def others(self, node_id: int) -> List[PeerNode]:
        return [self._peers[i] for i in self.ids if i != node_id]

    def __contains__(self, peer_id: int) -> bool:
        return peer_id in self._peers

    def __iter__(self) -> Iterator[PeerNode]:
        return iter(self._peers[i] for i in self.ids)

    def __len__(self) -> int:
        return len(self._peers)
